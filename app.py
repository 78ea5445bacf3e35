"""
Flask Web Application for the MedGuide anamnesis engine

JSON API over SessionOrchestrator. The browser front end is a separate
concern; every route here maps onto one user-facing action.
"""

import logging
import threading

from flask import Flask, Response, jsonify, request

from medguide.bootstrap import build_orchestrator
from medguide.commands import (
    LoadSession, RequestRecord, ResetSession, SkipSupplementalInput, StartSession,
    SubmitAnswers, SubmitImages,
)
from medguide.config import Settings
from medguide.contracts import DEFAULT_IMAGE_MEDIA_TYPE, ImageAttachment, IntakeData
from medguide.errors import RequestValidationError
from medguide.results import TransitionFailure
from medguide.utils.helpers import generate_record_filename

logger = logging.getLogger(__name__)

STATUS_BY_ERROR_TYPE = {
    RequestValidationError.error_type: 400,
}


def failure_status(failure: TransitionFailure) -> int:
    """HTTP status for a failed command"""
    if failure.error_type in STATUS_BY_ERROR_TYPE:
        return STATUS_BY_ERROR_TYPE[failure.error_type]
    if failure.error_type == "gateway":
        status_code = failure.details.get('status_code')
        if isinstance(status_code, int) and 400 <= status_code < 600:
            return status_code
        return 502
    return 500


def parse_images(payload):
    """
    Build ImageAttachments from a request body.

    Accepts {"images": ["<base64>", ...], "mediaType": "image/png"} or
    {"images": [{"data": "<base64>", "mediaType": "..."}, ...]}. A data URL
    prefix ("data:image/png;base64,") is stripped.
    """
    raw_images = payload.get('images')
    if not isinstance(raw_images, list):
        raise RequestValidationError("'images' must be a list")

    default_media_type = payload.get('mediaType') or DEFAULT_IMAGE_MEDIA_TYPE
    images = []
    for index, item in enumerate(raw_images):
        if isinstance(item, dict):
            data = item.get('data')
            media_type = item.get('mediaType') or default_media_type
        else:
            data, media_type = item, default_media_type

        if not isinstance(data, str) or not data.strip():
            raise RequestValidationError(f"Image at index {index} has no data", {'index': index})

        if data.startswith('data:'):
            header, _, data = data.partition(',')
            media_type = header[len('data:'):].split(';')[0] or media_type

        images.append(ImageAttachment(data=data, media_type=media_type))
    return tuple(images)


def create_app(orchestrator=None, settings=None):
    """
    Application factory.

    Args:
        orchestrator: Pre-built SessionOrchestrator (tests inject one)
        settings: Settings (default: Settings.from_env())
    """
    settings = settings or Settings.from_env()
    if orchestrator is None:
        orchestrator = build_orchestrator(settings)

    app = Flask(__name__)
    app.config['SECRET_KEY'] = settings.secret_key
    app.config['ORCHESTRATOR'] = orchestrator

    # One transition at a time
    busy = threading.Lock()

    def rejected_busy(action):
        logger.warning(f"Rejected {action}: another action is in progress")
        return jsonify({
            'success': False,
            'error': 'Another action is already in progress',
            'error_type': 'busy',
            'details': {}
        }), 409

    def run(command):
        if not busy.acquire(blocking=False):
            return rejected_busy(type(command).__name__)
        try:
            result = orchestrator.handle(command)
        finally:
            busy.release()

        if isinstance(result, TransitionFailure):
            return jsonify(result.to_dict()), failure_status(result)
        return jsonify(result.to_dict())

    def body():
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def bad_request(error: RequestValidationError):
        return jsonify({'success': False, **error.to_dict()}), 400

    @app.route('/')
    def index():
        return jsonify({'service': 'medguide', 'step': orchestrator.current_step.value})

    @app.route('/api/session', methods=['GET'])
    def current_session():
        return jsonify(orchestrator.view().to_dict())

    @app.route('/api/start', methods=['POST'])
    def start_session():
        try:
            intake = IntakeData.from_dict(body())
        except RequestValidationError as e:
            return bad_request(e)
        return run(StartSession(intake=intake))

    @app.route('/api/answers', methods=['POST'])
    def submit_answers():
        answers = body().get('answers')
        if not isinstance(answers, dict):
            return bad_request(RequestValidationError("'answers' must be an object"))
        return run(SubmitAnswers(answers=answers))

    @app.route('/api/images', methods=['POST'])
    def submit_images():
        try:
            images = parse_images(body())
        except RequestValidationError as e:
            return bad_request(e)
        return run(SubmitImages(images=images))

    @app.route('/api/skip', methods=['POST'])
    def skip_supplemental_input():
        return run(SkipSupplementalInput())

    @app.route('/api/record', methods=['POST'])
    def request_record():
        return run(RequestRecord())

    @app.route('/api/reset', methods=['POST'])
    def reset_session():
        return run(ResetSession())

    @app.route('/api/sessions', methods=['GET'])
    def list_sessions():
        sessions = [
            {
                'id': s.get('id'),
                'title': s.get('title'),
                'status': s.get('status'),
                'step': s.get('step'),
                'createdAt': s.get('createdAt'),
                'updatedAt': s.get('updatedAt')
            }
            for s in orchestrator.list_sessions()
        ]
        return jsonify({'success': True, 'sessions': sessions})

    @app.route('/api/sessions/<session_id>/load', methods=['POST'])
    def load_session(session_id):
        return run(LoadSession(session_id=session_id))

    @app.route('/api/sessions/<session_id>', methods=['DELETE'])
    def delete_session(session_id):
        if not busy.acquire(blocking=False):
            return rejected_busy("delete")
        try:
            deleted = orchestrator.delete_session(session_id)
        finally:
            busy.release()

        if not deleted:
            return jsonify({
                'success': False,
                'error': f"Session {session_id} not found",
                'error_type': 'not_found',
                'details': {}
            }), 404
        return jsonify({'success': True, 'deleted': session_id})

    @app.route('/api/record/download', methods=['GET'])
    def download_record():
        view = orchestrator.view()
        if not view.final_record:
            return jsonify({
                'success': False,
                'error': 'No medical record available',
                'error_type': 'not_found',
                'details': {}
            }), 404

        filename = generate_record_filename(view.session_id)
        return Response(
            view.final_record,
            mimetype='text/markdown',
            headers={'Content-Disposition': f'attachment; filename={filename}'}
        )

    logger.info("Flask app created")
    return app


if __name__ == '__main__':
    settings = Settings.from_env()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    app = create_app(settings=settings)

    print("\n" + "=" * 60)
    print("MEDGUIDE ANAMNESIS ENGINE - WEB API")
    print("=" * 60)
    print(f"\nGateway: {settings.gateway}")
    print("Server starting on http://localhost:5000")
    print("\nPress Ctrl+C to stop the server")
    print("=" * 60 + "\n")

    app.run(debug=False, host='0.0.0.0', port=5000)
