"""
Rubric API routes for the Rubric Grader.
Rubrics are authored in the client; these routes import a finished rubric
document and hand it back.
"""
import json

from flask import Blueprint, current_app, request, jsonify, Response
from pydantic import ValidationError

from rubric_grader.exceptions import RubricNotFoundError
from rubric_grader.rubric_io import export_rubric, import_rubric

rubric_bp = Blueprint('rubrics', __name__)


def _services():
    return current_app.extensions['rubric_grader']


@rubric_bp.route('/api/rubrics', methods=['GET'])
def list_rubrics():
    return jsonify({"rubricIds": _services().library.list_ids()})


@rubric_bp.route('/api/rubrics', methods=['POST'])
def import_rubric_route():
    """Import a rubric JSON document. Pass ?new_id=1 to store it as a copy."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Rubric JSON object required"}), 400

    try:
        rubric = import_rubric(json.dumps(data), new_id=request.args.get('new_id') == '1')
    except (ValidationError, ValueError) as e:
        return jsonify({"error": f"Invalid rubric: {e}"}), 400

    _services().library.put(rubric)
    return jsonify({"rubric": rubric.to_json_dict()}), 201


@rubric_bp.route('/api/rubrics/<rubric_id>', methods=['GET'])
def export_rubric_route(rubric_id):
    try:
        rubric = _services().library.get(rubric_id)
    except RubricNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return Response(export_rubric(rubric), mimetype='application/json')


@rubric_bp.route('/api/rubrics/<rubric_id>', methods=['DELETE'])
def delete_rubric_route(rubric_id):
    try:
        _services().library.delete(rubric_id)
    except RubricNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"status": "deleted"})


@rubric_bp.route('/api/rubrics/<rubric_id>/duplicate', methods=['POST'])
def duplicate_rubric_route(rubric_id):
    """Copy a rubric under a fresh id. Graded results are not copied."""
    library = _services().library
    try:
        rubric = library.get(rubric_id)
    except RubricNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    data = request.get_json(silent=True) or {}
    copy = library.duplicate(rubric, name=data.get('name'))
    return jsonify({"rubric": copy.to_json_dict()}), 201
