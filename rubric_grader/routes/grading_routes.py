"""
Grading API routes for the Rubric Grader.
Handles starting/resuming horizontal grading sessions, committing one unit
per student, navigating back, and finishing a session into stored results.
"""
import logging

from flask import Blueprint, current_app, request, jsonify
from pydantic import ValidationError

from rubric_grader.exceptions import InvalidCommitError, RubricNotFoundError
from rubric_grader.models import GradingAnswers
from rubric_grader.services.grading_session import UnitAnswer
from rubric_grader.services.score_calculator import calculate_student_score, percentage
from rubric_grader.services.threshold_resolver import resolve_student_status

logger = logging.getLogger(__name__)

grading_bp = Blueprint('grading', __name__)

NOT_SAVED_WARNING = "No privacy key set: grading progress is not being saved"


def _services():
    return current_app.extensions['rubric_grader']


def session_payload(session, resumed=None):
    """JSON view of a live session: pointer, progress and the current criteria."""
    unit = session.current_unit
    services = _services()
    payload = {
        "state": session.to_state().to_json_dict(),
        "progress": session.progress().to_json_dict(),
        "currentStudent": session.current_student_name,
        "currentUnit": None if unit is None else {
            "index": unit.index,
            "learningGoal": unit.learning_goal,
            "rows": [row.to_json_dict() for row in unit.rows],
        },
        "criteria": session.current_criteria(),
        "availableNames": session.available_names() if session.is_naming_new_student else [],
    }
    if resumed is not None:
        payload["resumed"] = resumed
    if not services.sessions.can_persist():
        payload["warning"] = NOT_SAVED_WARNING
    return payload


def _active_or_404(rubric_id):
    session = _services().active_session(rubric_id)
    if session is None:
        return None, (jsonify({"error": "No active grading session for this rubric"}), 404)
    return session, None


@grading_bp.route('/api/status')
def get_status():
    """Health check."""
    return jsonify({"status": "ok"})


@grading_bp.route('/api/rubrics/<rubric_id>/session', methods=['POST'])
def start_session(rubric_id):
    """Start grading a rubric, resuming saved progress unless resume is false."""
    data = request.get_json(silent=True) or {}
    roster = data.get('roster') or []
    if not isinstance(roster, list):
        return jsonify({"error": "roster must be a list of student names"}), 400

    try:
        session, resumed = _services().start_session(
            rubric_id,
            roster=[str(name) for name in roster],
            class_name=data.get('className', ''),
            resume=data.get('resume', True),
        )
    except RubricNotFoundError as e:
        return jsonify({"error": str(e)}), 404

    return jsonify(session_payload(session, resumed))


@grading_bp.route('/api/rubrics/<rubric_id>/session', methods=['GET'])
def get_session(rubric_id):
    session, error = _active_or_404(rubric_id)
    if error:
        return error
    return jsonify(session_payload(session))


@grading_bp.route('/api/rubrics/<rubric_id>/session/commit', methods=['POST'])
def commit_unit(rubric_id):
    """Record the current student's answer for the current unit."""
    session, error = _active_or_404(rubric_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    try:
        answer = UnitAnswer.model_validate(data.get('answer') or {})
        session.commit(answer, data.get('studentName'))
    except ValidationError as e:
        return jsonify({"error": f"Invalid answer: {e.errors()[0].get('msg')}"}), 400
    except InvalidCommitError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify(session_payload(session))


@grading_bp.route('/api/rubrics/<rubric_id>/session/back', methods=['POST'])
def go_back(rubric_id):
    session, error = _active_or_404(rubric_id)
    if error:
        return error
    moved = session.go_back()
    payload = session_payload(session)
    payload["moved"] = moved
    return jsonify(payload)


@grading_bp.route('/api/rubrics/<rubric_id>/session/not-made', methods=['POST'])
def toggle_not_made(rubric_id):
    """Mark (or unmark) the current unit as not made for the current student."""
    session, error = _active_or_404(rubric_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    try:
        marked = session.toggle_not_made(data.get('studentName'))
    except InvalidCommitError as e:
        return jsonify({"error": str(e)}), 400

    payload = session_payload(session)
    payload["notMade"] = marked
    return jsonify(payload)


@grading_bp.route('/api/rubrics/<rubric_id>/session/finish-roster', methods=['POST'])
def finish_roster(rubric_id):
    session, error = _active_or_404(rubric_id)
    if error:
        return error
    try:
        session.finish_roster()
    except InvalidCommitError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(session_payload(session))


@grading_bp.route('/api/rubrics/<rubric_id>/session/finish', methods=['POST'])
def finish_session(rubric_id):
    """Score every student and store the results; the saved session is dropped."""
    session, error = _active_or_404(rubric_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    expected = len(session.student_order)
    saved = _services().finish_session(rubric_id, data.get('className'))

    payload = {"results": [s.to_json_dict() for s in saved]}
    if len(saved) < expected:
        payload["warning"] = "Some results could not be saved; the session was kept"
    return jsonify(payload)


@grading_bp.route('/api/rubrics/<rubric_id>/session', methods=['DELETE'])
def abandon_session(rubric_id):
    _services().abandon_session(rubric_id)
    return jsonify({"status": "cleared"})


@grading_bp.route('/api/sessions/active', methods=['GET'])
def active_session():
    """Most recently updated resumable session for the current user."""
    return jsonify({"session": _services().sessions.latest_active()})


@grading_bp.route('/api/rubrics/<rubric_id>/score', methods=['POST'])
def score_preview(rubric_id):
    """Score one answer set without storing anything."""
    try:
        rubric = _services().library.get(rubric_id)
    except RubricNotFoundError as e:
        return jsonify({"error": str(e)}), 404

    try:
        answers = GradingAnswers.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return jsonify({"error": f"Invalid answers: {e.errors()[0].get('msg')}"}), 400

    score = calculate_student_score(rubric, answers)
    status = resolve_student_status(rubric, answers, score.total_score)
    return jsonify({
        "totalScore": score.total_score,
        "rowScores": score.row_scores,
        "percentage": percentage(rubric, score.total_score),
        "status": status.status,
        "statusLabel": status.status_label,
        "learningGoals": [goal.model_dump() for goal in status.learning_goals],
    })
