"""
Session Orchestrator - State machine for one anamnesis interview

Responsibilities:
- Own the single active Session
- Sequence transitions: build prompt -> call model -> classify -> commit
- Enforce the expected result kind per transition
- Substitute the subject's name into the final record
- Persist a snapshot after every successful transition
- Reset / load / list / delete persisted sessions

States:
    initial -> interviewing -> awaiting_supplemental_input
            -> (generating_outcome) -> outcome_ready
            -> (generating_record) -> completed
    failed is reachable from every non-terminal state; only reset() leaves it.

Design principles:
- One model call in flight per transition, no retries
- Guards run before any model call (RequestValidationError leaves the
  session untouched)
- Model-side failures move the session to 'failed' and are never persisted;
  the last committed snapshot stays loadable
- History is append-only
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from medguide.commands import (
    Command, LoadSession, RequestRecord, ResetSession, SkipSupplementalInput,
    SkipToRecord, StartSession, SubmitAnswers, SubmitImages,
)
from medguide.contracts import (
    ChatMessage, ImageAttachment, IntakeData, Session, SessionStatus, SessionStep,
    ROLE_ASSISTANT, ROLE_USER,
)
from medguide.core.prompt_builder import PromptBuilder, PromptPhase
from medguide.core.schema_validator import ResultKind, SchemaValidator, ValidationResult
from medguide.errors import (
    GatewayError, RequestValidationError, SchemaViolationError, SessionError,
    UnexpectedTypeError,
)
from medguide.results import TransitionFailure, TransitionResult
from medguide.utils.helpers import (
    derive_title, format_user_answers, generate_session_id, substitute_placeholder,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# Steps a persisted snapshot can be resumed from
RESUMABLE_STEPS = {
    SessionStep.INTERVIEWING,
    SessionStep.AWAITING_SUPPLEMENTAL_INPUT,
    SessionStep.OUTCOME_READY,
}


class SessionOrchestrator:
    """
    Drives one interview session at a time.

    Direct methods (start, submit_answers, ...) raise SessionError subclasses.
    handle(command) wraps them and returns TransitionResult / TransitionFailure.
    """

    def __init__(self, gateway, persistence,
                 prompt_builder: Optional[PromptBuilder] = None,
                 validator: Optional[SchemaValidator] = None):
        """
        Args:
            gateway: Model gateway with callable complete(messages, json_mode)
            persistence: Persistence gateway (save/get_by_id/update/delete/list_all)
            prompt_builder: PromptBuilder instance (default: no language directive)
            validator: SchemaValidator instance

        Raises:
            TypeError: If a collaborator is missing a required method
        """
        self._validate_collaborators(gateway, persistence)

        self.gateway = gateway
        self.persistence = persistence
        self.validator = validator or SchemaValidator()
        self.prompt_builder = prompt_builder or PromptBuilder(validator=self.validator)

        self.session: Optional[Session] = None
        self.model_call_count = 0

        logger.info("Session Orchestrator initialized")

    @staticmethod
    def _validate_collaborators(gateway, persistence):
        """Validate collaborator interfaces"""
        if not (hasattr(gateway, 'complete') and callable(getattr(gateway, 'complete', None))):
            raise TypeError("gateway must have callable complete() method")

        for method in ('save', 'get_by_id', 'update', 'delete', 'list_all'):
            if not (hasattr(persistence, method) and callable(getattr(persistence, method, None))):
                raise TypeError(f"persistence must have callable {method}() method")

    # ==================== COMMAND HANDLER ====================

    def handle(self, command: Command):
        """
        Dispatch a command.

        Returns:
            TransitionResult on success, TransitionFailure on any SessionError
        """
        command_type = type(command).__name__
        calls_before = self.model_call_count
        logger.info(f"Handling {command_type}")

        try:
            if isinstance(command, StartSession):
                self.start(command.intake)
            elif isinstance(command, SubmitAnswers):
                self.submit_answers(command.answers)
            elif isinstance(command, SubmitImages):
                self.submit_images(command.images)
            elif isinstance(command, SkipSupplementalInput):
                self.skip_supplemental_input()
            elif isinstance(command, SkipToRecord):
                self.skip_to_record(command.images)
            elif isinstance(command, RequestRecord):
                self.request_record()
            elif isinstance(command, ResetSession):
                self.reset()
            elif isinstance(command, LoadSession):
                self.load(command.session_id)
            else:
                raise RequestValidationError(f"Unknown command type: {command_type}")
        except SessionError as e:
            return TransitionFailure(
                reason=e.message,
                error_type=e.error_type,
                command_type=command_type,
                step=self.current_step.value,
                details=e.details
            )

        return self.view(debug={
            'command': command_type,
            'model_calls': self.model_call_count - calls_before
        })

    # ==================== VIEW ====================

    @property
    def current_step(self) -> SessionStep:
        return self.session.step if self.session else SessionStep.INITIAL

    def view(self, debug: Optional[Dict[str, Any]] = None) -> TransitionResult:
        """Project the active session for callers (no history, no intake)"""
        session = self.session
        if session is None:
            return TransitionResult(session_id=None, step=SessionStep.INITIAL.value,
                                    status=None, debug=debug or {})

        return TransitionResult(
            session_id=session.id,
            step=session.step.value,
            status=session.status.value,
            guidance=session.guidance,
            questions=[q.to_wire() for q in session.current_questions],
            structured_outcome=(
                session.structured_outcome.to_wire() if session.structured_outcome else None
            ),
            final_record=session.final_record,
            title=session.title,
            error=session.error,
            debug=debug or {}
        )

    # ==================== TRANSITIONS ====================

    def start(self, intake: IntakeData) -> Session:
        """
        initial -> interviewing

        Raises:
            RequestValidationError: Session already active or intake invalid
            GatewayError / DecodeError / SchemaViolationError / UnexpectedTypeError
        """
        if self.session is not None:
            raise RequestValidationError(
                "A session is already active. Reset before starting a new one.",
                {'session_id': self.session.id, 'step': self.session.step.value}
            )
        if not isinstance(intake, IntakeData):
            raise RequestValidationError("Intake data is required to start a session")

        now = utc_now_iso()
        session = Session(
            id=generate_session_id(),
            created_at=now,
            updated_at=now,
            intake=intake,
            title=derive_title(intake.complaint)
        )
        self.session = session
        logger.info(f"Starting session {session.id}")

        messages = self.prompt_builder.build(PromptPhase.INTERVIEW_START, intake=intake)
        for message in messages:
            session.append_message(message)

        result, raw = self._call_model(messages, (ResultKind.QUESTION_BATCH,), "start")

        self._append_assistant(raw)
        session.current_questions = result.payload.questions
        session.guidance = result.payload.explanation
        session.step = SessionStep.INTERVIEWING
        session.updated_at = utc_now_iso()

        self.persistence.save(session.to_snapshot())
        logger.info(f"Session {session.id} interviewing ({len(session.current_questions)} questions)")
        return session

    def submit_answers(self, answers: Dict[str, str]) -> Session:
        """
        interviewing -> interviewing | awaiting_supplemental_input

        Appends exactly one user message (formatted answers) and, on success,
        exactly one assistant message.
        """
        session = self._require_session()
        if session.step is not SessionStep.INTERVIEWING or not session.current_questions:
            raise RequestValidationError(
                "No active question batch to answer",
                {'step': session.step.value}
            )
        if not isinstance(answers, dict):
            raise RequestValidationError("Answers must be a mapping of question id to text")

        unknown = set(answers) - {q.id for q in session.current_questions}
        if unknown:
            logger.warning(f"Ignoring answers for unknown question ids: {sorted(unknown)}")

        session.append_message(ChatMessage(
            role=ROLE_USER,
            content=format_user_answers(answers, session.current_questions)
        ))

        messages = self.prompt_builder.build(
            PromptPhase.INTERVIEW_CONTINUATION, history=session.history
        )
        result, raw = self._call_model(
            messages, (ResultKind.QUESTION_BATCH, ResultKind.READINESS_SIGNAL), "submit_answers"
        )

        self._append_assistant(raw)
        if result.kind is ResultKind.QUESTION_BATCH:
            session.current_questions = result.payload.questions
            session.guidance = result.payload.explanation
            logger.info(f"Session {session.id}: {len(session.current_questions)} more questions")
        else:
            session.current_questions = ()
            session.guidance = result.payload.explanation
            session.step = SessionStep.AWAITING_SUPPLEMENTAL_INPUT
            logger.info(f"Session {session.id}: interview complete, awaiting supplemental input")

        self._commit()
        return session

    def submit_images(self, images: Sequence[ImageAttachment]) -> Session:
        """awaiting_supplemental_input -> outcome_ready"""
        session = self._require_supplemental_step()
        images = self._validate_images(images)
        if not images:
            raise RequestValidationError(
                "At least one image is required. Use skip to continue without images."
            )

        session.images = images
        self._generate_outcome()
        self._commit()
        return session

    def skip_supplemental_input(self) -> Session:
        """awaiting_supplemental_input -> completed, without images"""
        return self.skip_to_record(())

    def skip_to_record(self, images: Sequence[ImageAttachment] = ()) -> Session:
        """
        awaiting_supplemental_input -> outcome_ready -> completed

        Outcome and record are generated back to back with the same image
        set. The outcome is committed before the record call, so a failed
        record call leaves an outcome_ready snapshot behind.
        """
        session = self._require_supplemental_step()
        session.images = self._validate_images(images)

        self._generate_outcome()
        self._commit()

        self._generate_record()
        self._commit()
        return session

    def request_record(self) -> Session:
        """
        outcome_ready -> completed

        Raises:
            RequestValidationError: No structured outcome yet (whatever the step)
        """
        session = self._require_session()
        if session.structured_outcome is None:
            raise RequestValidationError(
                "Cannot generate the medical record before the structured outcome exists",
                {'step': session.step.value}
            )
        if session.step is not SessionStep.OUTCOME_READY:
            raise RequestValidationError(
                f"Cannot generate the medical record in step '{session.step.value}'",
                {'step': session.step.value}
            )

        self._generate_record()
        self._commit()
        return session

    # ==================== LIFECYCLE ====================

    def reset(self) -> None:
        """
        Discard the active session.

        The persisted snapshot (if any) is marked 'completed' when the
        session completed, 'abandoned' otherwise.
        """
        session = self.session
        if session is None:
            return

        if self.persistence.get_by_id(session.id) is not None:
            status = (
                SessionStatus.COMPLETED if session.step is SessionStep.COMPLETED
                else SessionStatus.ABANDONED
            )
            self.persistence.update(session.id, {'status': status.value})
            logger.info(f"Session {session.id} reset (persisted as {status.value})")
        else:
            logger.info(f"Session {session.id} reset (never persisted)")

        self.session = None

    def load(self, session_id: str) -> Session:
        """
        Make a persisted snapshot the active session.

        Resets any active session first. An abandoned snapshot in a resumable
        step is marked in-progress again, including the snapshot of the
        active session that reset() has just marked abandoned.
        """
        snapshot = self.persistence.get_by_id(session_id)
        if snapshot is None:
            raise RequestValidationError(f"Session {session_id} not found", {'session_id': session_id})

        try:
            session = Session.from_snapshot(snapshot)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.error(f"Snapshot {session_id} is malformed: {e}")
            raise RequestValidationError(
                f"Session {session_id} could not be restored",
                {'session_id': session_id, 'cause': str(e)}
            )

        reloading_active = self.session is not None and self.session.id == session_id
        self.reset()

        if session.step in RESUMABLE_STEPS and (
                reloading_active or session.status is SessionStatus.ABANDONED):
            session.status = SessionStatus.IN_PROGRESS
            self.persistence.update(session.id, {'status': session.status.value})

        self.session = session
        logger.info(f"Loaded session {session.id} at step {session.step.value}")
        return session

    def list_sessions(self) -> List[Dict[str, Any]]:
        """Persisted snapshots, most recently updated first"""
        return sorted(
            self.persistence.list_all(),
            key=lambda s: s.get('updatedAt') or '',
            reverse=True
        )

    def delete_session(self, session_id: str) -> bool:
        """
        Delete a persisted snapshot.

        Deleting the active session's snapshot also drops the active session.
        """
        if self.session is not None and self.session.id == session_id:
            logger.info(f"Deleting active session {session_id}")
            self.session = None
        return self.persistence.delete(session_id)

    # ==================== GENERATION STEPS ====================

    def _generate_outcome(self) -> None:
        session = self.session
        session.step = SessionStep.GENERATING_OUTCOME

        messages = self.prompt_builder.build(
            PromptPhase.OUTCOME_GENERATION,
            history=session.history,
            images=session.images or ()
        )
        result, raw = self._call_model(messages, (ResultKind.STRUCTURED_OUTCOME,), "generate_outcome")

        self._append_assistant(raw)
        session.structured_outcome = result.payload
        session.step = SessionStep.OUTCOME_READY
        logger.info(
            f"Session {session.id}: outcome ready "
            f"({len(result.payload.most_probable_diagnosis)} diagnoses)"
        )

    def _generate_record(self) -> None:
        session = self.session
        session.step = SessionStep.GENERATING_RECORD

        messages = self.prompt_builder.build(
            PromptPhase.RECORD_GENERATION,
            history=session.history,
            intake=session.intake,
            images=session.images or ()
        )
        result, raw = self._call_model(messages, (ResultKind.FINAL_RECORD,), "generate_record")

        # History keeps the placeholder, the name only enters the stored record
        self._append_assistant(raw)
        session.final_record = substitute_placeholder(
            result.payload.medical_record, session.intake.full_name
        )
        session.step = SessionStep.COMPLETED
        session.status = SessionStatus.COMPLETED
        logger.info(f"Session {session.id}: completed")

    # ==================== HELPERS ====================

    def _call_model(self, messages: List[ChatMessage], expected: Tuple[ResultKind, ...],
                    transition: str) -> Tuple[ValidationResult, Any]:
        """
        One model round trip, classified and checked against the expected kinds.

        Any failure moves the session to 'failed' and is re-raised.

        Returns:
            (ValidationResult, decoded value)
        """
        self.model_call_count += 1
        logger.info(f"[{transition}] calling model with {len(messages)} message(s)")

        try:
            value = self.gateway.complete(messages, json_mode=True)
        except SessionError as e:
            self._fail(e, transition)
            raise
        except Exception as e:
            error = GatewayError(f"AI service error: {e}")
            self._fail(error, transition)
            raise error from e

        result = self.validator.classify(value)

        if not result.is_valid:
            logger.warning(f"[{transition}] invalid model response: {value!r}")
            error = SchemaViolationError(
                f"Invalid response format from AI. {result.reason}",
                {'keys_found': list(result.keys_found), 'raw_response': value}
            )
            self._fail(error, transition)
            raise error

        if result.kind not in expected:
            logger.warning(f"[{transition}] unexpected response type {result.kind.value}: {value!r}")
            error = UnexpectedTypeError(
                f"Expected {' or '.join(k.value for k in expected)} but the AI "
                f"returned {result.kind.value}",
                {
                    'expected': [k.value for k in expected],
                    'received': result.kind.value,
                    'raw_response': value
                }
            )
            self._fail(error, transition)
            raise error

        logger.debug(f"[{transition}] accepted {result.kind.value}")
        return result, value

    def _fail(self, error: SessionError, transition: str) -> None:
        session = self.session
        logger.error(f"[{transition}] session {session.id} failed ({error.error_type}): {error.message}")
        session.step = SessionStep.FAILED
        session.error = error.message
        session.error_details = {'error_type': error.error_type, **error.details}
        session.updated_at = utc_now_iso()

    def _append_assistant(self, raw: Any) -> None:
        self.session.append_message(ChatMessage(
            role=ROLE_ASSISTANT,
            content=json.dumps(raw, ensure_ascii=False)
        ))

    def _commit(self) -> None:
        session = self.session
        session.updated_at = utc_now_iso()
        self.persistence.update(session.id, session.to_snapshot())

    def _require_session(self) -> Session:
        if self.session is None:
            raise RequestValidationError("No active session. Start or load a session first.")
        return self.session

    def _require_supplemental_step(self) -> Session:
        session = self._require_session()
        if session.step is not SessionStep.AWAITING_SUPPLEMENTAL_INPUT:
            raise RequestValidationError(
                f"Supplemental input is not expected in step '{session.step.value}'",
                {'step': session.step.value}
            )
        if session.images is not None:
            raise RequestValidationError("Images have already been set for this session")
        return session

    @staticmethod
    def _validate_images(images) -> Tuple[ImageAttachment, ...]:
        if images is None or isinstance(images, (str, bytes)):
            raise RequestValidationError("Images must be a list of image attachments")
        images = tuple(images)
        for index, image in enumerate(images):
            if not isinstance(image, ImageAttachment) or not image.data:
                raise RequestValidationError(
                    f"Image at index {index} is not a valid image attachment",
                    {'index': index}
                )
        return images
