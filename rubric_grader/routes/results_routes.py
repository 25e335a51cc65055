"""
Results API routes for the Rubric Grader.
Lists and upserts graded students, and manages the client privacy key that
encrypts results for signed-in users.
"""
import logging

from flask import Blueprint, current_app, g, request, jsonify
from pydantic import ValidationError

from rubric_grader.exceptions import PrivacyKeyMissingError
from rubric_grader.models import GradedStudent

logger = logging.getLogger(__name__)

results_bp = Blueprint('results', __name__)


def _services():
    return current_app.extensions['rubric_grader']


@results_bp.route('/api/rubrics/<rubric_id>/results', methods=['GET'])
def get_results(rubric_id):
    services = _services()
    students = services.results.fetch(rubric_id)
    payload = {"results": [s.to_json_dict() for s in students]}
    if not services.results.can_persist():
        payload["warning"] = "Set your privacy key to load saved results"
    return jsonify(payload)


@results_bp.route('/api/rubrics/<rubric_id>/results', methods=['POST'])
def save_result(rubric_id):
    """Save one graded student; an existing record with the same name is updated."""
    data = request.get_json(silent=True) or {}
    try:
        student = GradedStudent.model_validate(data)
    except ValidationError as e:
        return jsonify({"error": f"Invalid result: {e.errors()[0].get('msg')}"}), 400

    if not student.student_name.strip():
        return jsonify({"error": "Student name is required"}), 400

    saved = _services().results.save(rubric_id, student)
    if saved is None:
        return jsonify({"error": "Result not saved. Set your privacy key and try again."}), 409
    return jsonify({"result": saved.to_json_dict()})


@results_bp.route('/api/privacy-key', methods=['GET'])
def privacy_key_status():
    return jsonify({"isSet": _services().keyring.key_for(g.user_id) is not None})


@results_bp.route('/api/privacy-key', methods=['POST'])
def set_privacy_key():
    data = request.get_json(silent=True) or {}
    try:
        _services().keyring.set(data.get('key', ''), g.user_id)
    except PrivacyKeyMissingError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"isSet": True})


@results_bp.route('/api/privacy-key', methods=['DELETE'])
def clear_privacy_key():
    _services().keyring.clear(g.user_id)
    return jsonify({"isSet": False})
