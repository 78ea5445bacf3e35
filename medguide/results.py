"""
Result types returned by SessionOrchestrator.handle()

These are the ONLY return types from the command handler.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class TransitionResult:
    """
    Successful transition.

    Attributes:
        session_id: Active session id (None after reset)
        step: SessionStep value after the transition
        status: SessionStatus value (None after reset)
        guidance: Latest free-text explanation from the model
        questions: Current question batch as wire dicts
        structured_outcome: Outcome wire dict once generated
        final_record: Record text (name substituted) once generated
        title: Listing title of the session
        error: Failure message when step is 'failed'
        debug: Transition diagnostics (command, model calls made, etc.)
    """
    session_id: Optional[str]
    step: str
    status: Optional[str]
    guidance: Optional[str] = None
    questions: List[Dict[str, Any]] = field(default_factory=list)
    structured_outcome: Optional[Dict[str, Any]] = None
    final_record: Optional[str] = None
    title: Optional[str] = None
    error: Optional[str] = None
    debug: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'sessionId': self.session_id,
            'step': self.step,
            'status': self.status,
            'title': self.title,
            'guidance': self.guidance,
            'questions': self.questions,
            'structuredOutcome': self.structured_outcome,
            'finalRecord': self.final_record,
            'error': self.error
        }


@dataclass(frozen=True)
class TransitionFailure:
    """
    Command failed (rejected up front, or model output not acceptable).

    Examples:
    - SubmitAnswers when no question batch is pending (request_validation)
    - StartSession where the model answered with readiness (unexpected_type)
    - Any command where the provider call failed (gateway)

    Attributes:
        reason: Human-readable explanation
        error_type: SessionError.error_type of the underlying error
        command_type: Name of the failed command type
        step: SessionStep value after the failure
        details: Diagnostic payload (raw response, keys found, status code)
    """
    reason: str
    error_type: str
    command_type: str
    step: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': False,
            'error': self.reason,
            'error_type': self.error_type,
            'command_type': self.command_type,
            'step': self.step,
            'details': self.details
        }
