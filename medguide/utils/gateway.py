"""
Model Gateway - interface consumed by the Session Orchestrator

Responsibilities:
- Define the gateway contract (ordered messages in, decoded JSON out)
- Shared decoding of raw model text into a JSON value
- Conservative JSON repair for local models without a JSON mode

Failure contract (no retries, all fatal for the calling transition):
- GatewayError: transport/provider failure (with status code if known)
- DecodeError(kind='empty'): model returned no content
- DecodeError(kind='invalid_json'): content is not JSON (raw text kept)
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Sequence

from medguide.contracts import ChatMessage
from medguide.errors import DecodeError

logger = logging.getLogger(__name__)


class ModelGateway(ABC):
    """Performs one model call per complete() invocation"""

    @abstractmethod
    def complete(self, messages: Sequence[ChatMessage], json_mode: bool = True) -> Any:
        """
        Send messages to the model and return the decoded JSON value.

        Args:
            messages: Ordered chat messages (system first)
            json_mode: Ask the provider to force a single JSON object

        Returns:
            Decoded JSON value (usually a dict)

        Raises:
            GatewayError: Transport or provider failure
            DecodeError: Empty content or invalid JSON
        """
        raise NotImplementedError


def decode_model_content(content: Any) -> Any:
    """
    Decode raw model text into a JSON value.

    Raises:
        DecodeError: If content is empty or not valid JSON
    """
    if content is None or (isinstance(content, str) and not content.strip()):
        logger.error("Model response content is empty")
        raise DecodeError("AI response content is empty.", kind=DecodeError.EMPTY)

    try:
        return json.loads(content)
    except (json.JSONDecodeError, TypeError) as e:
        logger.error(f"Failed to parse model response as JSON: {e}")
        logger.debug(f"Raw model response: {str(content)[:500]}")
        raise DecodeError(
            f"Failed to parse AI response as JSON: {e}",
            kind=DecodeError.INVALID_JSON,
            raw_text=str(content)
        )


def repair_json_text(text: str) -> str:
    """
    Attempt to repair common JSON formatting issues in local model output.

    Only handles object output (not arrays):
    - strips markdown code fences
    - trims to the first '{' and last '}'
    - naive brace balancing (does not understand braces inside strings)

    Args:
        text: Raw model output

    Returns:
        str: Cleaned text (may still fail json.loads)
    """
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]

    text = text.strip()

    first_brace = text.find('{')
    last_brace = text.rfind('}')

    if first_brace == -1:
        logger.warning("No braces found in JSON repair")
        return text

    if last_brace < first_brace:
        # Truncated output: opening brace but no closing one
        text = text[first_brace:]
    else:
        text = text[first_brace:last_brace + 1]

    open_count = text.count('{')
    close_count = text.count('}')

    if open_count > close_count:
        missing = open_count - close_count
        text += '}' * missing
        logger.debug(f"Added {missing} closing braces")

    elif close_count > open_count:
        diff = close_count - open_count
        for _ in range(diff):
            last_close = text.rfind('}')
            if last_close != -1:
                text = text[:last_close] + text[last_close + 1:]
        logger.debug(f"Removed {diff} extra closing braces")

    return text
