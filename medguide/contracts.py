"""
Semantic contracts for the anamnesis session engine.

This module defines the data structures passed between modules: the intake
form, the four model result payloads, chat messages, and the Session
aggregate root owned by the orchestrator.

Design principles:
- Frozen dataclasses for everything that crosses a module boundary
- Session is the only mutable object, and only the orchestrator mutates it
- Wire names (camelCase JSON keys) live here and in the validator only
- Snapshots are JSON-safe deep copies, never live references

Contents:
- IntakeData: subject intake form (immutable once the session starts)
- Question, QuestionBatch, ReadinessSignal, StructuredOutcome, FinalRecord
- TextPart, ImagePart, ChatMessage, ImageAttachment
- SessionStep, SessionStatus, Session

Usage:
    from medguide.contracts import Session, SessionStep, ChatMessage
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from medguide.errors import RequestValidationError


# Wire keys of the four model result shapes
KEY_EXPLANATION = "explanation"
KEY_QUESTIONS = "questions"
KEY_READY = "readyForRecord"
KEY_DIAGNOSIS = "mostProbableDiagnosis"
KEY_ADVICE = "advice"
KEY_SPECIALISTS = "recommendedSpecialists"
KEY_RECORD = "medicalRecord"

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
VALID_ROLES = {ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT}

DEFAULT_IMAGE_MEDIA_TYPE = "image/jpeg"


@dataclass(frozen=True)
class IntakeData:
    """
    Subject intake form.

    The full name never reaches the model. It lives only in local state and
    is substituted into the final record after generation.
    """
    full_name: str
    age: str
    gender: str
    complaint: str

    def __post_init__(self):
        for name in ('full_name', 'age', 'gender', 'complaint'):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise RequestValidationError(
                    f"Intake field '{name}' is required and must be a non-empty string",
                    {'field': name}
                )

    def to_dict(self) -> Dict[str, str]:
        return {
            'fullName': self.full_name,
            'age': self.age,
            'gender': self.gender,
            'complaint': self.complaint
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "IntakeData":
        if not isinstance(data, dict):
            raise RequestValidationError("Intake data must be an object")
        return IntakeData(
            full_name=data.get('fullName'),
            age=data.get('age'),
            gender=data.get('gender'),
            complaint=data.get('complaint')
        )


@dataclass(frozen=True)
class Question:
    """One interview question. Suggestions are optional canned answers."""
    id: str
    text: str
    suggestions: Tuple[str, ...] = ()

    def to_wire(self) -> Dict[str, Any]:
        wire = {'id': self.id, 'text': self.text}
        if self.suggestions:
            wire['suggestions'] = list(self.suggestions)
        return wire


@dataclass(frozen=True)
class QuestionBatch:
    explanation: str
    questions: Tuple[Question, ...]

    def to_wire(self) -> Dict[str, Any]:
        return {
            KEY_EXPLANATION: self.explanation,
            KEY_QUESTIONS: [q.to_wire() for q in self.questions]
        }


@dataclass(frozen=True)
class ReadinessSignal:
    """Model says the interview has gathered enough information"""
    explanation: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        wire = {KEY_READY: True}
        if self.explanation is not None:
            wire[KEY_EXPLANATION] = self.explanation
        return wire


@dataclass(frozen=True)
class StructuredOutcome:
    """
    Subject-facing summary.

    Both lists are ranked: most likely diagnosis first, most relevant
    specialist first.
    """
    most_probable_diagnosis: Tuple[str, ...]
    advice: str
    recommended_specialists: Tuple[str, ...]

    def to_wire(self) -> Dict[str, Any]:
        return {
            KEY_DIAGNOSIS: list(self.most_probable_diagnosis),
            KEY_ADVICE: self.advice,
            KEY_SPECIALISTS: list(self.recommended_specialists)
        }

    @staticmethod
    def from_wire(data: Dict[str, Any]) -> "StructuredOutcome":
        return StructuredOutcome(
            most_probable_diagnosis=tuple(data[KEY_DIAGNOSIS]),
            advice=data[KEY_ADVICE],
            recommended_specialists=tuple(data[KEY_SPECIALISTS])
        )


@dataclass(frozen=True)
class FinalRecord:
    """Professional-facing markdown record"""
    medical_record: str

    def to_wire(self) -> Dict[str, Any]:
        return {KEY_RECORD: self.medical_record}


# ========================
# Chat messages
# ========================

@dataclass(frozen=True)
class TextPart:
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {'type': 'text', 'text': self.text}


@dataclass(frozen=True)
class ImagePart:
    """Base64 image content part (no data: prefix)"""
    data: str
    media_type: str = DEFAULT_IMAGE_MEDIA_TYPE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'image_url',
            'image_url': {'url': f"data:{self.media_type};base64,{self.data}"}
        }


ContentPart = Union[TextPart, ImagePart]


@dataclass(frozen=True)
class ChatMessage:
    """
    One message in the exchange with the model.

    Content is either plain text or a tuple of content parts (text and
    images). Rendered in the OpenAI chat format by to_dict().
    """
    role: str
    content: Union[str, Tuple[ContentPart, ...]]

    def __post_init__(self):
        if self.role not in VALID_ROLES:
            raise ValueError(f"Invalid message role: {self.role}")

    @property
    def text(self) -> str:
        """Text content only (image parts dropped)"""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(p.text for p in self.content if isinstance(p, TextPart))

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.content, str):
            return {'role': self.role, 'content': self.content}
        return {'role': self.role, 'content': [p.to_dict() for p in self.content]}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ChatMessage":
        content = data['content']
        if isinstance(content, str):
            return ChatMessage(role=data['role'], content=content)

        parts = []
        for part in content:
            if part.get('type') == 'image_url':
                url = part['image_url']['url']
                # data:<media_type>;base64,<data>
                header, _, payload = url.partition(',')
                media_type = header[len('data:'):].split(';')[0] or DEFAULT_IMAGE_MEDIA_TYPE
                parts.append(ImagePart(data=payload, media_type=media_type))
            else:
                parts.append(TextPart(text=part.get('text', '')))
        return ChatMessage(role=data['role'], content=tuple(parts))


@dataclass(frozen=True)
class ImageAttachment:
    """Supporting image supplied by the subject (opaque base64 blob)"""
    data: str
    media_type: str = DEFAULT_IMAGE_MEDIA_TYPE

    def to_part(self) -> ImagePart:
        return ImagePart(data=self.data, media_type=self.media_type)

    def to_dict(self) -> Dict[str, str]:
        return {'data': self.data, 'mediaType': self.media_type}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ImageAttachment":
        return ImageAttachment(
            data=data['data'],
            media_type=data.get('mediaType', DEFAULT_IMAGE_MEDIA_TYPE)
        )


# ========================
# Session aggregate
# ========================

class SessionStep(str, Enum):
    """Orchestrator state machine steps"""
    INITIAL = "initial"
    INTERVIEWING = "interviewing"
    AWAITING_SUPPLEMENTAL_INPUT = "awaiting_supplemental_input"
    GENERATING_OUTCOME = "generating_outcome"
    OUTCOME_READY = "outcome_ready"
    GENERATING_RECORD = "generating_record"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionStatus(str, Enum):
    """Lifecycle status as seen in persistence"""
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


@dataclass
class Session:
    """
    Aggregate root for one interview.

    Mutated only by SessionOrchestrator. History is append-only: whole
    messages are added, never edited or removed.

    Step/field consistency:
        interviewing                -> current_questions non-empty
        awaiting_supplemental_input -> current_questions empty
        outcome_ready               -> structured_outcome set
        completed                   -> structured_outcome and final_record set
        failed                      -> error set
    """
    id: str
    created_at: str
    updated_at: str
    intake: IntakeData
    status: SessionStatus = SessionStatus.IN_PROGRESS
    step: SessionStep = SessionStep.INITIAL
    history: List[ChatMessage] = field(default_factory=list)
    current_questions: Tuple[Question, ...] = ()
    guidance: Optional[str] = None
    structured_outcome: Optional[StructuredOutcome] = None
    final_record: Optional[str] = None
    images: Optional[Tuple[ImageAttachment, ...]] = None
    title: Optional[str] = None
    error: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

    def append_message(self, message: ChatMessage) -> None:
        self.history.append(message)

    def to_snapshot(self) -> Dict[str, Any]:
        """
        Serialize to JSON-safe dict (deep copy).

        Returns:
            dict: Snapshot mirroring every Session field
        """
        return copy.deepcopy({
            'id': self.id,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'status': self.status.value,
            'step': self.step.value,
            'history': [m.to_dict() for m in self.history],
            'currentQuestions': [q.to_wire() for q in self.current_questions],
            'guidance': self.guidance,
            'structuredOutcome': (
                self.structured_outcome.to_wire() if self.structured_outcome else None
            ),
            'finalRecord': self.final_record,
            'intake': self.intake.to_dict(),
            'images': (
                [img.to_dict() for img in self.images] if self.images is not None else None
            ),
            'title': self.title,
            'error': self.error,
            'errorDetails': self.error_details
        })

    @staticmethod
    def from_snapshot(snapshot: Dict[str, Any]) -> "Session":
        """
        Deserialize from snapshot dict.

        Deep copies so no external reference can mutate the session.

        Raises:
            KeyError / ValueError / AttributeError: If the snapshot is malformed
        """
        data = copy.deepcopy(snapshot)
        outcome = data.get('structuredOutcome')
        images = data.get('images')
        return Session(
            id=data['id'],
            created_at=data['createdAt'],
            updated_at=data['updatedAt'],
            intake=IntakeData.from_dict(data['intake']),
            status=SessionStatus(data.get('status', SessionStatus.IN_PROGRESS.value)),
            step=SessionStep(data.get('step', SessionStep.INITIAL.value)),
            history=[ChatMessage.from_dict(m) for m in data.get('history', [])],
            current_questions=tuple(
                Question(id=q['id'], text=q['text'], suggestions=tuple(q.get('suggestions') or ()))
                for q in data.get('currentQuestions', [])
            ),
            guidance=data.get('guidance'),
            structured_outcome=StructuredOutcome.from_wire(outcome) if outcome else None,
            final_record=data.get('finalRecord'),
            images=(
                tuple(ImageAttachment.from_dict(i) for i in images) if images is not None else None
            ),
            title=data.get('title'),
            error=data.get('error'),
            error_details=data.get('errorDetails')
        )
