"""
Test Schema Validator - classification of decoded model output

Run with: pytest tests/test_schema_validator.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json

from medguide.contracts import ChatMessage, QuestionBatch, ReadinessSignal, StructuredOutcome
from medguide.core.schema_validator import (
    ResultKind, SchemaValidator, is_structured_outcome_message,
)


VALID_BATCH = {
    "explanation": "Let's clarify your cough.",
    "questions": [
        {"id": "q1", "text": "Since when?", "suggestions": ["1 day", "1 week"]},
        {"id": "q2", "text": "Any fever?"}
    ]
}

VALID_OUTCOME = {
    "mostProbableDiagnosis": ["Viral bronchitis", "Asthma"],
    "advice": "Rest and hydrate.",
    "recommendedSpecialists": ["General practitioner", "Pulmonologist"]
}


# ========================
# Valid shapes
# ========================

def test_question_batch():
    """Test a well-formed question batch is classified with typed payload"""
    result = SchemaValidator().classify(VALID_BATCH)

    assert result.kind is ResultKind.QUESTION_BATCH
    assert result.is_valid
    assert isinstance(result.payload, QuestionBatch)
    assert [q.id for q in result.payload.questions] == ["q1", "q2"]
    assert result.payload.questions[0].suggestions == ("1 day", "1 week")
    assert result.payload.questions[1].suggestions == ()

    print("✓ Question batch test passed")


def test_readiness_signal_with_and_without_explanation():
    """Test readiness signal with optional explanation"""
    validator = SchemaValidator()

    bare = validator.classify({"readyForRecord": True})
    assert bare.kind is ResultKind.READINESS_SIGNAL
    assert bare.payload == ReadinessSignal(explanation=None)

    explained = validator.classify({"readyForRecord": True, "explanation": "Enough info."})
    assert explained.kind is ResultKind.READINESS_SIGNAL
    assert explained.payload.explanation == "Enough info."

    print("✓ Readiness signal test passed")


def test_structured_outcome():
    """Test three-field outcome keeps ranking order"""
    result = SchemaValidator().classify(VALID_OUTCOME)

    assert result.kind is ResultKind.STRUCTURED_OUTCOME
    assert isinstance(result.payload, StructuredOutcome)
    assert result.payload.most_probable_diagnosis == ("Viral bronchitis", "Asthma")
    assert result.payload.recommended_specialists[0] == "General practitioner"

    print("✓ Structured outcome test passed")


def test_final_record():
    """Test single-key record"""
    result = SchemaValidator().classify({"medicalRecord": "# Record\n[PATIENT_FULL_NAME]"})

    assert result.kind is ResultKind.FINAL_RECORD
    assert result.payload.medical_record.startswith("# Record")

    print("✓ Final record test passed")


# ========================
# Invalid shapes
# ========================

def test_empty_object_is_invalid():
    """Test empty object is invalid with a reason"""
    result = SchemaValidator().classify({})

    assert result.kind is ResultKind.INVALID
    assert not result.is_valid
    assert result.payload is None
    assert "empty" in result.reason

    print("✓ Empty object test passed")


def test_non_object_is_invalid():
    """Test arrays, strings and None are invalid"""
    validator = SchemaValidator()
    for value in ([VALID_BATCH], "hello", None, 42):
        result = validator.classify(value)
        assert result.kind is ResultKind.INVALID
        assert "not a JSON object" in result.reason

    print("✓ Non-object test passed")


def test_unknown_keys_reason_lists_keys():
    """Test unknown shape reports the keys it found"""
    result = SchemaValidator().classify({"diagnosis": "flu", "notes": "x"})

    assert result.kind is ResultKind.INVALID
    assert "diagnosis" in result.reason
    assert "notes" in result.reason
    assert result.keys_found == ("diagnosis", "notes")

    print("✓ Unknown keys test passed")


def test_extra_keys_make_shapes_invalid():
    """Test strict top-level key sets for every shape"""
    validator = SchemaValidator()

    cases = [
        {"readyForRecord": True, "questions": []},
        {**VALID_OUTCOME, "confidence": 0.8},
        {"medicalRecord": "text", "summary": "text"},
        {**VALID_BATCH, "readyForRecord": False},
        {**VALID_BATCH, "note": "extra"},
    ]
    for value in cases:
        result = validator.classify(value)
        assert result.kind is ResultKind.INVALID, f"Expected invalid for keys {sorted(value)}"

    print("✓ Extra keys test passed")


def test_ready_for_record_must_be_true():
    """Test readyForRecord false / string is not a readiness signal"""
    validator = SchemaValidator()

    for flag in (False, "true", 1):
        result = validator.classify({"readyForRecord": flag})
        assert result.kind is ResultKind.INVALID
        assert "readyForRecord" in result.reason

    print("✓ readyForRecord type test passed")


def test_wrong_field_types():
    """Test field types are checked inside each shape"""
    validator = SchemaValidator()

    assert validator.classify({"readyForRecord": True, "explanation": 5}).kind is ResultKind.INVALID
    assert validator.classify({**VALID_OUTCOME, "advice": ["a", "b"]}).kind is ResultKind.INVALID
    assert validator.classify({**VALID_OUTCOME, "mostProbableDiagnosis": "flu"}).kind is ResultKind.INVALID
    assert validator.classify({**VALID_OUTCOME, "recommendedSpecialists": [1, 2]}).kind is ResultKind.INVALID
    assert validator.classify({"medicalRecord": {"text": "x"}}).kind is ResultKind.INVALID
    assert validator.classify({"explanation": 1, "questions": VALID_BATCH["questions"]}).kind is ResultKind.INVALID
    assert validator.classify({"explanation": "x", "questions": "q1"}).kind is ResultKind.INVALID

    print("✓ Field type test passed")


def test_question_item_problems():
    """Test malformed question items are reported with their index"""
    validator = SchemaValidator()

    bad_items = [
        ["q1"],
        [{"text": "No id"}],
        [{"id": 1, "text": "Numeric id"}],
        [{"id": "q1"}],
        [{"id": "q1", "text": "Bad suggestions", "suggestions": "yes"}],
        [{"id": "q1", "text": "Bad suggestions", "suggestions": [1]}],
    ]
    for items in bad_items:
        result = validator.classify({"explanation": "x", "questions": items})
        assert result.kind is ResultKind.INVALID
        assert "index 0" in result.reason

    print("✓ Question item test passed")


def test_empty_question_list_is_invalid():
    """Test a batch needs at least one question"""
    result = SchemaValidator().classify({"explanation": "x", "questions": []})

    assert result.kind is ResultKind.INVALID
    assert "no questions" in result.reason

    print("✓ Empty question list test passed")


def test_duplicate_question_ids_are_invalid():
    """Test question ids must be unique within a batch"""
    result = SchemaValidator().classify({
        "explanation": "x",
        "questions": [{"id": "q1", "text": "A?"}, {"id": "q1", "text": "B?"}]
    })

    assert result.kind is ResultKind.INVALID
    assert "Duplicate question id 'q1'" in result.reason

    print("✓ Duplicate id test passed")


def test_classification_is_idempotent():
    """Test the same value classifies the same way twice"""
    validator = SchemaValidator()

    for value in (VALID_BATCH, VALID_OUTCOME, {"readyForRecord": True}, {}, {"x": 1}):
        assert validator.classify(value) == validator.classify(value)

    print("✓ Idempotence test passed")


# ========================
# Structured outcome predicate
# ========================

def test_outcome_predicate_matches_assistant_outcome():
    """Test predicate matches assistant messages holding an outcome"""
    message = ChatMessage(role="assistant", content=json.dumps(VALID_OUTCOME))
    assert is_structured_outcome_message(message)

    print("✓ Outcome predicate match test passed")


def test_outcome_predicate_rejects_other_messages():
    """Test predicate keeps user messages, other shapes and undecodable text"""
    outcome_text = json.dumps(VALID_OUTCOME)

    assert not is_structured_outcome_message(ChatMessage(role="user", content=outcome_text))
    assert not is_structured_outcome_message(
        ChatMessage(role="assistant", content=json.dumps(VALID_BATCH))
    )
    assert not is_structured_outcome_message(ChatMessage(role="assistant", content="not json {"))
    assert not is_structured_outcome_message(
        ChatMessage(role="assistant", content=json.dumps({**VALID_OUTCOME, "extra": 1}))
    )

    print("✓ Outcome predicate reject test passed")
