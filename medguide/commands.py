"""
Command types for SessionOrchestrator.handle()

Every user-facing action exists as a frozen command. The web surface and
the console harness build commands; the orchestrator dispatches them.
"""

from dataclasses import dataclass
from typing import Dict, Tuple

from medguide.contracts import ImageAttachment, IntakeData


@dataclass(frozen=True)
class StartSession:
    """
    Begin a new interview from intake data.

    Only valid when no session is active.
    Returns: TransitionResult at step 'interviewing'.
    """
    intake: IntakeData


@dataclass(frozen=True)
class SubmitAnswers:
    """
    Answer the current question batch.

    answers maps question id -> free text. Missing ids are recorded as
    unanswered.
    """
    answers: Dict[str, str]


@dataclass(frozen=True)
class SubmitImages:
    """Attach supporting images and generate the structured outcome"""
    images: Tuple[ImageAttachment, ...]


@dataclass(frozen=True)
class SkipSupplementalInput:
    """
    Skip images and generate outcome and record in one go.

    Returns: TransitionResult at step 'completed'.
    """
    pass


@dataclass(frozen=True)
class SkipToRecord:
    """Generate outcome and record in one go with an optional image set"""
    images: Tuple[ImageAttachment, ...] = ()


@dataclass(frozen=True)
class RequestRecord:
    """Generate the final record once the structured outcome exists"""
    pass


@dataclass(frozen=True)
class ResetSession:
    """Discard the active session and return to 'initial'"""
    pass


@dataclass(frozen=True)
class LoadSession:
    """Make a persisted snapshot the active session"""
    session_id: str


# Command union type for type hints
Command = (
    StartSession | SubmitAnswers | SubmitImages | SkipSupplementalInput
    | SkipToRecord | RequestRecord | ResetSession | LoadSession
)
