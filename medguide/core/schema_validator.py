"""
Schema Validator - Classify decoded model output into tagged results

Responsibilities:
- Classify a decoded JSON value into exactly one of four result shapes
- Validate every field type of the matched shape
- Produce an 'invalid' result with a human-readable reason otherwise
- Provide the structured-outcome predicate used to filter history

Rule order (first match wins, key sets are disjoint so no value can
satisfy two rules):
1. readiness signal      {"readyForRecord": true, "explanation"?: str}
2. structured outcome    {"mostProbableDiagnosis": [str], "advice": str,
                          "recommendedSpecialists": [str]}
3. final record          {"medicalRecord": str}
4. question batch        {"explanation": str, "questions": [{id, text, suggestions?}]}
5. anything else         -> invalid(reason)

Design principles:
- Exact matches only, extra top-level keys make a response invalid
- Never guess intent from partial matches
- Stateless and deterministic (same value, same result)
- Does not know which shape a transition expects (orchestrator's job)
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Union

from medguide.contracts import (
    ChatMessage, FinalRecord, Question, QuestionBatch, ReadinessSignal,
    StructuredOutcome, ROLE_ASSISTANT,
    KEY_ADVICE, KEY_DIAGNOSIS, KEY_EXPLANATION, KEY_QUESTIONS, KEY_READY,
    KEY_RECORD, KEY_SPECIALISTS,
)

logger = logging.getLogger(__name__)

READINESS_KEYS = {KEY_READY, KEY_EXPLANATION}
OUTCOME_KEYS = {KEY_DIAGNOSIS, KEY_ADVICE, KEY_SPECIALISTS}
RECORD_KEYS = {KEY_RECORD}
QUESTION_BATCH_KEYS = {KEY_EXPLANATION, KEY_QUESTIONS}


class ResultKind(str, Enum):
    QUESTION_BATCH = "questionBatch"
    READINESS_SIGNAL = "readinessSignal"
    STRUCTURED_OUTCOME = "structuredOutcome"
    FINAL_RECORD = "finalRecord"
    INVALID = "invalid"


Payload = Union[QuestionBatch, ReadinessSignal, StructuredOutcome, FinalRecord]


@dataclass(frozen=True)
class ValidationResult:
    """
    Tagged classification result.

    Attributes:
        kind: Which shape matched (or INVALID)
        payload: Typed payload for the matched shape, None when invalid
        reason: Human-readable reason when invalid, None otherwise
        keys_found: Top-level keys of the value (sorted), for diagnostics
    """
    kind: ResultKind
    payload: Optional[Payload] = None
    reason: Optional[str] = None
    keys_found: tuple = ()

    @property
    def is_valid(self) -> bool:
        return self.kind is not ResultKind.INVALID


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def _keys_text(keys) -> str:
    return ", ".join(sorted(keys)) if keys else "(none)"


class SchemaValidator:
    """Classify decoded model responses against the four result shapes"""

    def classify(self, value: Any) -> ValidationResult:
        """
        Classify a decoded JSON value.

        Args:
            value: Anything json.loads() can return

        Returns:
            ValidationResult tagged with the matched kind, or INVALID
        """
        if not isinstance(value, dict):
            return self._invalid(
                f"Response is not a JSON object (got {type(value).__name__})", ()
            )

        keys = set(value.keys())
        keys_found = tuple(sorted(keys))

        if not keys:
            return self._invalid("Response is an empty object", keys_found)

        # 1. Readiness signal
        if value.get(KEY_READY) is True:
            return self._classify_readiness(value, keys, keys_found)

        # 2. Structured outcome
        if OUTCOME_KEYS <= keys:
            return self._classify_outcome(value, keys, keys_found)

        # 3. Final record
        if KEY_RECORD in keys:
            return self._classify_record(value, keys, keys_found)

        # 4. Question batch
        if QUESTION_BATCH_KEYS <= keys:
            return self._classify_question_batch(value, keys, keys_found)

        # 5. Nothing matched
        if KEY_READY in keys:
            return self._invalid(
                f"'{KEY_READY}' must be boolean true, got {value[KEY_READY]!r}. "
                f"Keys found: {_keys_text(keys)}",
                keys_found
            )
        return self._invalid(
            f"Unexpected response format. Keys found: {_keys_text(keys)}. "
            f"Does not match question batch, readiness signal, structured "
            f"outcome, or final record structure.",
            keys_found
        )

    def _classify_readiness(self, value, keys, keys_found) -> ValidationResult:
        extra = keys - READINESS_KEYS
        if extra:
            return self._invalid(
                f"Unexpected keys in readiness signal: {_keys_text(extra)}. "
                f"Expected only '{KEY_READY}' and optional '{KEY_EXPLANATION}'",
                keys_found
            )

        explanation = value.get(KEY_EXPLANATION)
        if explanation is not None and not isinstance(explanation, str):
            return self._invalid(
                f"Readiness signal '{KEY_EXPLANATION}' must be a string, "
                f"got {type(explanation).__name__}",
                keys_found
            )

        return ValidationResult(
            kind=ResultKind.READINESS_SIGNAL,
            payload=ReadinessSignal(explanation=explanation),
            keys_found=keys_found
        )

    def _classify_outcome(self, value, keys, keys_found) -> ValidationResult:
        extra = keys - OUTCOME_KEYS
        if extra:
            return self._invalid(
                f"Unexpected keys in structured outcome: {_keys_text(extra)}",
                keys_found
            )

        problems = []
        if not _is_string_list(value[KEY_DIAGNOSIS]):
            problems.append(f"'{KEY_DIAGNOSIS}' must be an array of strings")
        if not isinstance(value[KEY_ADVICE], str):
            problems.append(f"'{KEY_ADVICE}' must be a string")
        if not _is_string_list(value[KEY_SPECIALISTS]):
            problems.append(f"'{KEY_SPECIALISTS}' must be an array of strings")
        if problems:
            return self._invalid(
                "Invalid structured outcome: " + "; ".join(problems), keys_found
            )

        return ValidationResult(
            kind=ResultKind.STRUCTURED_OUTCOME,
            payload=StructuredOutcome(
                most_probable_diagnosis=tuple(value[KEY_DIAGNOSIS]),
                advice=value[KEY_ADVICE],
                recommended_specialists=tuple(value[KEY_SPECIALISTS])
            ),
            keys_found=keys_found
        )

    def _classify_record(self, value, keys, keys_found) -> ValidationResult:
        if keys != RECORD_KEYS:
            return self._invalid(
                f"Final record must contain only '{KEY_RECORD}'. "
                f"Keys found: {_keys_text(keys)}",
                keys_found
            )
        if not isinstance(value[KEY_RECORD], str):
            return self._invalid(
                f"'{KEY_RECORD}' must be a string, "
                f"got {type(value[KEY_RECORD]).__name__}",
                keys_found
            )
        return ValidationResult(
            kind=ResultKind.FINAL_RECORD,
            payload=FinalRecord(medical_record=value[KEY_RECORD]),
            keys_found=keys_found
        )

    def _classify_question_batch(self, value, keys, keys_found) -> ValidationResult:
        extra = keys - QUESTION_BATCH_KEYS
        if extra:
            return self._invalid(
                f"Unexpected keys in question batch: {_keys_text(extra)}",
                keys_found
            )

        if not isinstance(value[KEY_EXPLANATION], str):
            return self._invalid(f"'{KEY_EXPLANATION}' must be a string", keys_found)

        items = value[KEY_QUESTIONS]
        if not isinstance(items, list):
            return self._invalid(f"'{KEY_QUESTIONS}' must be an array", keys_found)
        if not items:
            return self._invalid("Question batch contains no questions", keys_found)

        questions: List[Question] = []
        seen_ids = set()
        for index, item in enumerate(items):
            problem = self._question_item_problem(item)
            if problem:
                return self._invalid(
                    f"Invalid structure within questions array at index {index}: {problem}",
                    keys_found
                )
            if item['id'] in seen_ids:
                return self._invalid(
                    f"Duplicate question id '{item['id']}' in question batch",
                    keys_found
                )
            seen_ids.add(item['id'])
            questions.append(Question(
                id=item['id'],
                text=item['text'],
                suggestions=tuple(item.get('suggestions', ()))
            ))

        return ValidationResult(
            kind=ResultKind.QUESTION_BATCH,
            payload=QuestionBatch(
                explanation=value[KEY_EXPLANATION],
                questions=tuple(questions)
            ),
            keys_found=keys_found
        )

    @staticmethod
    def _question_item_problem(item: Any) -> Optional[str]:
        """Return what is wrong with a question item, or None if it is valid"""
        if not isinstance(item, dict):
            return f"item is {type(item).__name__}, expected object"
        if not isinstance(item.get('id'), str):
            return "'id' must be a string"
        if not isinstance(item.get('text'), str):
            return "'text' must be a string"
        if 'suggestions' in item and not _is_string_list(item['suggestions']):
            return "'suggestions' must be an array of strings"
        return None

    @staticmethod
    def _invalid(reason: str, keys_found) -> ValidationResult:
        logger.debug(f"Classified invalid: {reason}")
        return ValidationResult(
            kind=ResultKind.INVALID,
            reason=reason,
            keys_found=tuple(keys_found)
        )


def is_structured_outcome_message(message: ChatMessage,
                                  validator: Optional[SchemaValidator] = None) -> bool:
    """
    True if message is an assistant message whose content is a structured outcome.

    Decode failures (and non-text content) count as "not a match", so the
    message is kept.

    Args:
        message: History message
        validator: Validator to reuse (a fresh one is created if omitted)
    """
    if message.role != ROLE_ASSISTANT or not isinstance(message.content, str):
        return False

    try:
        decoded = json.loads(message.content)
    except (json.JSONDecodeError, TypeError):
        return False

    validator = validator or SchemaValidator()
    return validator.classify(decoded).kind is ResultKind.STRUCTURED_OUTCOME
