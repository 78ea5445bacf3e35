"""
Error taxonomy for the anamnesis session engine.

Every failure a transition can hit is one of five kinds. All of them are
terminal for the transition that raised them; none is retried.

- RequestValidationError: caller invoked a transition with missing or
  malformed inputs, or in the wrong step (rejected before any model call)
- GatewayError: transport/provider failure, carries provider status code
- DecodeError: model returned empty content or non-JSON text
- SchemaViolationError: decoded JSON matches none of the four shapes
- UnexpectedTypeError: decoded JSON matches a shape, but not the one the
  transition required

Usage:
    from medguide.errors import SessionError, SchemaViolationError
"""

from typing import Any, Dict, Optional


class SessionError(Exception):
    """
    Base class for all session transition failures.

    Attributes:
        message: Human-readable explanation (surfaced to the user)
        details: Diagnostic payload (raw offending response, keys found, etc.)
    """

    error_type = "session_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.message,
            'error_type': self.error_type,
            'details': self.details
        }


class RequestValidationError(SessionError):
    """Transition invoked with missing/malformed fields or in the wrong step"""

    error_type = "request_validation"


class GatewayError(SessionError):
    """
    Model provider or transport failure.

    Attributes:
        status_code: Provider HTTP status when available, else None
    """

    error_type = "gateway"

    def __init__(self, message: str, status_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault('status_code', status_code)
        super().__init__(message, details)
        self.status_code = status_code


class DecodeError(SessionError):
    """
    Model returned empty content or text that is not valid JSON.

    Attributes:
        kind: 'empty' or 'invalid_json'
        raw_text: Raw model output, preserved for diagnostics
    """

    error_type = "decode"

    EMPTY = "empty"
    INVALID_JSON = "invalid_json"

    def __init__(self, message: str, kind: str, raw_text: Optional[str] = None):
        super().__init__(message, {'kind': kind, 'raw_text': raw_text})
        self.kind = kind
        self.raw_text = raw_text


class SchemaViolationError(SessionError):
    """Decoded response matches none of the expected result shapes"""

    error_type = "schema_violation"


class UnexpectedTypeError(SessionError):
    """Decoded response is a valid shape, but not the one the transition needs"""

    error_type = "unexpected_type"
