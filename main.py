"""
Console Test Harness for SessionOrchestrator

Drives a full interview from the terminal against the configured gateway,
before going through the Flask surface.
"""

import base64
import logging
import mimetypes
import sys

from medguide.bootstrap import build_orchestrator
from medguide.commands import (
    RequestRecord, ResetSession, SkipSupplementalInput, StartSession, SubmitAnswers,
    SubmitImages,
)
from medguide.config import Settings
from medguide.contracts import (
    DEFAULT_IMAGE_MEDIA_TYPE, ImageAttachment, IntakeData, SessionStep,
)
from medguide.errors import RequestValidationError
from medguide.results import TransitionFailure

logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"quit", "exit", "stop"}


class ConsoleExit(Exception):
    """User typed an exit command"""
    pass


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def ask(prompt):
    value = input(prompt).strip()
    if value.lower() in EXIT_COMMANDS:
        raise ConsoleExit()
    return value


def ask_required(prompt):
    while True:
        value = ask(prompt)
        if value:
            return value
        print("Please enter a value.")


def print_failure(failure):
    print(f"\nERROR ({failure.error_type}): {failure.reason}")
    raw = failure.details.get('raw_response') or failure.details.get('raw_text')
    if raw is not None:
        print(f"Raw response: {raw}")


def print_questions(result):
    if result.guidance:
        print(f"\n{result.guidance}\n")
    for question in result.questions:
        print(f"[{question['id']}] {question['text']}")
        if question.get('suggestions'):
            print(f"    suggestions: {', '.join(question['suggestions'])}")


def print_outcome(outcome):
    print_separator("-")
    print("MOST PROBABLE DIAGNOSIS:")
    for rank, diagnosis in enumerate(outcome['mostProbableDiagnosis'], 1):
        print(f"  {rank}. {diagnosis}")
    print(f"\nADVICE:\n  {outcome['advice']}")
    print("\nRECOMMENDED SPECIALISTS:")
    for rank, specialist in enumerate(outcome['recommendedSpecialists'], 1):
        print(f"  {rank}. {specialist}")
    print_separator("-")


def read_image(path):
    """Read an image file as an ImageAttachment"""
    media_type = mimetypes.guess_type(path)[0] or DEFAULT_IMAGE_MEDIA_TYPE
    with open(path, 'rb') as f:
        data = base64.b64encode(f.read()).decode('ascii')
    return ImageAttachment(data=data, media_type=media_type)


def run_session(orchestrator):
    """One interview from intake to record. Returns False on failure."""
    print("\nIntake (type 'quit' at any prompt to stop)\n")
    while True:
        try:
            intake = IntakeData(
                full_name=ask_required("Full name: "),
                age=ask_required("Age: "),
                gender=ask_required("Gender: "),
                complaint=ask_required("Reason for consultation: ")
            )
            break
        except RequestValidationError as e:
            print(f"Invalid intake: {e.message}")

    print("\nStarting interview...")
    result = orchestrator.handle(StartSession(intake=intake))

    while not isinstance(result, TransitionFailure) and result.step == SessionStep.INTERVIEWING.value:
        print_questions(result)
        answers = {}
        for question in result.questions:
            answers[question['id']] = ask(f"\n{question['text']}\n> ")
        print("\nThinking...")
        result = orchestrator.handle(SubmitAnswers(answers=answers))

    if isinstance(result, TransitionFailure):
        print_failure(result)
        return False

    if result.guidance:
        print(f"\n{result.guidance}")

    paths = ask("\nImage files to attach (comma-separated, empty to skip): ")
    if paths:
        try:
            images = tuple(read_image(p.strip()) for p in paths.split(',') if p.strip())
        except OSError as e:
            print(f"Could not read image: {e}. Continuing without images.")
            images = ()
    else:
        images = ()

    if images:
        print("\nGenerating outcome...")
        result = orchestrator.handle(SubmitImages(images=images))
        if isinstance(result, TransitionFailure):
            print_failure(result)
            return False
        print_outcome(result.structured_outcome)
        print("\nGenerating medical record...")
        result = orchestrator.handle(RequestRecord())
    else:
        print("\nGenerating outcome and medical record...")
        result = orchestrator.handle(SkipSupplementalInput())

    if isinstance(result, TransitionFailure):
        print_failure(result)
        return False

    if not images:
        print_outcome(result.structured_outcome)

    print_separator()
    print("MEDICAL RECORD")
    print_separator()
    print(result.final_record)
    return True


def main():
    """Run console harness"""
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print_separator()
    print("MEDGUIDE ANAMNESIS ENGINE - CONSOLE TEST")
    print_separator()
    print(f"\nInitializing {settings.gateway} gateway...")

    try:
        orchestrator = build_orchestrator(settings)
    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        logger.exception("Initialization failed")
        return 1

    exit_code = 0
    try:
        if not run_session(orchestrator):
            exit_code = 1
    except (ConsoleExit, KeyboardInterrupt, EOFError):
        print("\n\nSession ended by user")
    finally:
        orchestrator.handle(ResetSession())

    print_separator()
    print("Console test complete")
    print_separator()
    return exit_code


if __name__ == '__main__':
    sys.exit(main())
