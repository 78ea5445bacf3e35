"""
Utility helpers for the anamnesis session engine

Small pure functions for ids, timestamps, filenames, answer formatting and
name placeholder substitution.
"""

import uuid
from datetime import datetime, timezone

# Token the model is told to emit wherever the subject's name belongs
PATIENT_NAME_PLACEHOLDER = "[PATIENT_FULL_NAME]"

NO_ANSWER_TEXT = "No answer provided."

TITLE_MAX_LENGTH = 60


def generate_session_id(short=False):
    """
    Generate unique session identifier

    Args:
        short (bool): If True, return 8-char hex. If False, return full UUID hex.

    Returns:
        str: Session ID

    Examples:
        >>> generate_session_id(short=True)
        'a3f7e2b9'
    """
    full_id = uuid.uuid4().hex
    return full_id[:8] if short else full_id


def utc_now_iso():
    """Current UTC time as ISO-8601 string"""
    return datetime.now(timezone.utc).isoformat()


def generate_record_filename(session_id, extension="md"):
    """
    Generate timestamped filename for a downloaded record

    Format: medical-record_{YYYYMMDD_HHMMSS}_{session_id[:8]}.{extension}

    Examples:
        >>> generate_record_filename("a3f7e2b9c1d2")
        'medical-record_20251126_153045_a3f7e2b9.md'
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"medical-record_{timestamp}_{session_id[:8]}.{extension}"


def format_user_answers(answers, questions):
    """
    Render the subject's answers as the user message appended to history.

    One block per current question, in batch order. Questions without an
    answer (missing or blank) are rendered as "No answer provided.".

    Args:
        answers (dict): question id -> answer text
        questions (sequence of Question): current question batch

    Returns:
        str: Formatted answer text

    Examples:
        >>> format_user_answers({'q1': 'Three days'}, [Question('q1', 'Since when?')])
        'Answer for Q (q1): "Since when?"\\nThree days'
    """
    blocks = []
    for question in questions:
        answer = answers.get(question.id)
        if not isinstance(answer, str) or not answer.strip():
            answer = NO_ANSWER_TEXT
        blocks.append(f'Answer for Q ({question.id}): "{question.text}"\n{answer}')
    return "\n\n".join(blocks)


def substitute_placeholder(text, full_name, placeholder=PATIENT_NAME_PLACEHOLDER):
    """Replace every literal occurrence of the name placeholder"""
    return text.replace(placeholder, full_name)


def derive_title(complaint, max_length=TITLE_MAX_LENGTH):
    """Short listing title from the initial complaint"""
    text = " ".join(complaint.split())
    if len(text) <= max_length:
        return text
    return text[:max_length - 3].rstrip() + "..."
