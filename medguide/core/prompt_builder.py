"""
Prompt Builder - Assemble the ordered message list for each phase

Responsibilities:
- Emit the phase-specific system message (behavioral contract)
- Replay history with prior system messages stripped
- Strip earlier structured outcomes from history in the record phase
- Append the trailing instruction (and image parts where supplied)
- Keep the subject's name out of every prompt

NOT responsible for:
- Calling the model
- Validating model output
- Deciding which phase comes next

Design principles:
- Pure function of (phase, history, phase inputs) apart from the clock
- Fail-fast on inputs a phase cannot be built from (PromptBuildError)
- Output wire shapes are spelled out in every prompt, the model sees them
  on every call
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Sequence

from medguide.contracts import (
    ChatMessage, ImageAttachment, IntakeData, TextPart,
    ROLE_SYSTEM, ROLE_USER,
)
from medguide.core.schema_validator import SchemaValidator, is_structured_outcome_message
from medguide.utils.helpers import PATIENT_NAME_PLACEHOLDER

logger = logging.getLogger(__name__)


class PromptBuildError(ValueError):
    """Raised when a prompt cannot be built from the given inputs"""
    pass


class PromptPhase(Enum):
    INTERVIEW_START = "interview_start"
    INTERVIEW_CONTINUATION = "interview_continuation"
    OUTCOME_GENERATION = "outcome_generation"
    RECORD_GENERATION = "record_generation"


INTERVIEW_SYSTEM_PROMPT = """Consultation Time: {time}
You are conducting a structured medical interview (anamnesis) with the person described below. Your task is to conduct a thorough diagnostic conversation.

**Process to Follow:**
1. **Chief Complaint:** Clarify the main reason for the consultation and how long it has been going on.
2. **History of Present Illness:** Systematically explore the main symptom(s) using a framework such as SOCRATES or OPQRST (site, onset, character, radiation, associated symptoms, timing, exacerbating/relieving factors, severity).
3. **Review of Systems:** Briefly screen other body systems (constitutional, head/neck, cardiovascular, respiratory, gastrointestinal, genitourinary, neurological, skin, musculoskeletal) for related issues.
4. **Past Medical History:** Chronic illnesses, past major illnesses, surgeries, hospitalizations, relevant screenings and vaccinations.
5. **Medications & Allergies:** Current prescription and over-the-counter medications, supplements, and known allergies.
6. **Family History:** Significant illnesses in parents, siblings and children that may be relevant.
7. **Social History:** Smoking, alcohol, recreational drugs, occupation, living situation, diet, exercise and stress, only as relevant to the symptoms.
8. **Patient's Perspective:** What the person thinks is causing the symptoms and what worries them most.
9. **Clarification:** Ask clarifying questions as needed.
10. **Red Flag Check:** Explicitly ask about red-flag symptoms (sudden severe pain, difficulty breathing, chest pain, weakness/numbness/confusion, unexplained weight loss, unexpected bleeding).

**CRITICAL: Your output MUST be a single JSON object.**
{language}
**Output Format for Asking Questions:**
```json
{{
  "explanation": "A brief, reassuring explanation of the current step or why you are asking these questions.",
  "questions": [
    {{"id": "q1", "text": "The question text.", "suggestions": ["Suggestion 1", "Suggestion 2"]}},
    {{"id": "q2", "text": "Another question.", "suggestions": ["..."]}}
  ]
}}
```
- Each question MUST have an `id` that is unique within the batch (e.g. "q1", "q2").
- `suggestions` is an optional array of short strings that help the person answer.

**Output Format for Signaling Readiness to Conclude:**
When you have sufficient information to reason about a diagnosis and write a medical record, output ONLY:
```json
{{"readyForRecord": true}}
```
- You may add an optional string "explanation" key to that object, and nothing else.
- The diagnosis and the medical record are produced by separate requests later.

No other output shapes are allowed."""

OUTCOME_SYSTEM_PROMPT = """Consultation Time: {time}
Based on the interview conversation provided, identify the most likely diagnoses and guide the person towards the right help.

**CRITICAL: Your output MUST be a single JSON object.**
{language}
**Analysis Task:**
1. Reason about and identify the most likely diagnoses. Rank them from most to least likely.
2. Formulate general advice relevant to the person's situation.
3. Recommend the types of medical specialists the person should consult, ranked by relevance or urgency.

**Output Format:**
The JSON object MUST contain exactly these three keys: "mostProbableDiagnosis", "advice" and "recommendedSpecialists".
```json
{{
  "mostProbableDiagnosis": ["Most likely diagnosis", "Second most likely diagnosis"],
  "advice": "General advice based on the conversation.",
  "recommendedSpecialists": ["Most relevant specialist", "Second most relevant specialist"]
}}
```
- `mostProbableDiagnosis`: array of strings sorted by likelihood, phrased as possibilities, not certainties.
- `advice`: a single string.
- `recommendedSpecialists`: array of strings sorted by relevance/urgency.
- If images of examination results are attached, take them into account.
- Do NOT include any text outside the JSON object.
- Do NOT ask any further questions."""

RECORD_SYSTEM_PROMPT = """Consultation Time: {time}
Synthesize a medical record for a physician from the interview conversation provided.

**CRITICAL: Your output MUST be a single JSON object.**
{language}
**Output Format:**
The JSON object MUST contain exactly one key: "medicalRecord". Its value is a string holding the markdown content of the medical observation.
```json
{{"medicalRecord": "Markdown medical observation based on the conversation"}}
```
- Do NOT include any text outside the JSON object.
- Do NOT ask any further questions.
- If images of examination results are attached, summarize their relevant findings."""

START_INSTRUCTION = """Start the medical interview. Initial information about the person:
- Age: {age}
- Gender: {gender}
- Initial Complaint/Reason for Consultation: {complaint}

Ask the first set of relevant questions based on this information. Strictly follow the JSON output format for questions."""

CONTINUATION_INSTRUCTION = """Based on the conversation history above, continue the interview. Ask the next set of relevant questions OR, if you have sufficient information, signal that you are ready to conclude.

**CRITICAL: Your output MUST be a single JSON object in one of these two formats.**

If asking questions:
```json
{"explanation": "...", "questions": [{"id": "...", "text": "...", "suggestions": ["..."]}]}
```

If ready to conclude, ONLY:
```json
{"readyForRecord": true, "explanation": "Optional explanation"}
```"""

OUTCOME_INSTRUCTION = """Based on the entire conversation above, produce the diagnostic summary for the person.

**CRITICAL: Your output MUST be a single JSON object strictly following this format:**
```json
{"mostProbableDiagnosis": ["...", "..."], "advice": "...", "recommendedSpecialists": ["...", "..."]}
```
Sort the diagnoses by likelihood and the specialists by relevance."""

RECORD_INSTRUCTION = """Based on the initial information and the conversation history above, generate the final medical record for a physician.

Initial Information:
- Age: {age}
- Gender: {gender}
- Initial Complaint/Reason for Consultation: {complaint}

**CRITICAL: Your output MUST be a single JSON object containing only the "medicalRecord" key, whose value is the markdown record.**
```json
{{"medicalRecord": "..."}}
```
**PRIVACY:** Write the exact placeholder `{placeholder}` wherever the person's full name should appear. Never invent a name.

Do not include any other text outside this JSON object."""


class PromptBuilder:
    """
    Build the ordered message list sent to the model.

    Pure apart from the consultation timestamp, which comes from an
    injectable clock.
    """

    def __init__(self, response_language: Optional[str] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 validator: Optional[SchemaValidator] = None):
        """
        Args:
            response_language: If set, every system prompt tells the model to
                write in this language (e.g. "French")
            clock: Returns the current datetime (default datetime.now)
            validator: Schema validator used by the history filter
        """
        self.response_language = response_language
        self.clock = clock or datetime.now
        self.validator = validator or SchemaValidator()

    # ==================== PUBLIC API ====================

    def build(self, phase: PromptPhase, history: Sequence[ChatMessage] = (),
              intake: Optional[IntakeData] = None,
              images: Sequence[ImageAttachment] = ()) -> List[ChatMessage]:
        """
        Dispatch to the phase-specific builder.

        Raises:
            PromptBuildError: If the phase inputs are missing
        """
        if phase is PromptPhase.INTERVIEW_START:
            if intake is None:
                raise PromptBuildError("Interview start requires intake data")
            return self.build_interview_start(intake)
        if phase is PromptPhase.INTERVIEW_CONTINUATION:
            return self.build_interview_continuation(history)
        if phase is PromptPhase.OUTCOME_GENERATION:
            return self.build_outcome_generation(history, images)
        if phase is PromptPhase.RECORD_GENERATION:
            if intake is None:
                raise PromptBuildError("Record generation requires intake data")
            return self.build_record_generation(history, intake, images)
        raise PromptBuildError(f"Unknown prompt phase: {phase}")

    def build_interview_start(self, intake: IntakeData) -> List[ChatMessage]:
        # intake.full_name deliberately not used
        return [
            self._system(INTERVIEW_SYSTEM_PROMPT),
            ChatMessage(role=ROLE_USER, content=START_INSTRUCTION.format(
                age=intake.age,
                gender=intake.gender,
                complaint=intake.complaint
            ))
        ]

    def build_interview_continuation(self, history: Sequence[ChatMessage]) -> List[ChatMessage]:
        return [
            self._system(INTERVIEW_SYSTEM_PROMPT),
            *strip_system_messages(history),
            ChatMessage(role=ROLE_USER, content=CONTINUATION_INSTRUCTION)
        ]

    def build_outcome_generation(self, history: Sequence[ChatMessage],
                                 images: Sequence[ImageAttachment] = ()) -> List[ChatMessage]:
        if not history:
            raise PromptBuildError("Cannot generate outcome from empty history")

        return [
            self._system(OUTCOME_SYSTEM_PROMPT),
            *strip_system_messages(history),
            self._instruction(OUTCOME_INSTRUCTION, images)
        ]

    def build_record_generation(self, history: Sequence[ChatMessage], intake: IntakeData,
                                images: Sequence[ImageAttachment] = ()) -> List[ChatMessage]:
        if not history:
            raise PromptBuildError("Cannot generate record from empty history")

        filtered = [
            message for message in strip_system_messages(history)
            if not is_structured_outcome_message(message, self.validator)
        ]
        removed = len(history) - len(filtered)
        logger.debug(f"Record prompt: {removed} system/outcome message(s) stripped from history")

        instruction = RECORD_INSTRUCTION.format(
            age=intake.age,
            gender=intake.gender,
            complaint=intake.complaint,
            placeholder=PATIENT_NAME_PLACEHOLDER
        )
        return [
            self._system(RECORD_SYSTEM_PROMPT),
            *filtered,
            self._instruction(instruction, images)
        ]

    # ==================== HELPERS ====================

    def _system(self, template: str) -> ChatMessage:
        language = ""
        if self.response_language:
            language = f"\n**WRITE IN {self.response_language.upper()}**\n"
        content = template.format(
            time=self.clock().strftime("%Y-%m-%d %H:%M"),
            language=language
        )
        return ChatMessage(role=ROLE_SYSTEM, content=content)

    @staticmethod
    def _instruction(text: str, images: Sequence[ImageAttachment]) -> ChatMessage:
        if not images:
            return ChatMessage(role=ROLE_USER, content=text)
        parts = [TextPart(text=text)] + [image.to_part() for image in images]
        logger.info(f"Attached {len(images)} image(s) to instruction message")
        return ChatMessage(role=ROLE_USER, content=tuple(parts))


def strip_system_messages(history: Sequence[ChatMessage]) -> List[ChatMessage]:
    return [message for message in history if message.role != ROLE_SYSTEM]
