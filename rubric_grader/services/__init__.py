"""
Rubric Grader Services
======================

Business logic services for the rubric grader.

Services:
- score_calculator: row and total scores for every grading mode
- threshold_resolver: status labels and mastery learning-goal results
- grading_session: the horizontal grading state machine
- privacy_cipher: client-side encryption of names and payloads
- persistence: guest (local) and signed-in (encrypted remote) strategies
- results_store: graded students with name-based de-duplication
- session_persistence: session save/resume and the autosaver
- registry: wiring of all of the above for the API layer
"""

# Services are imported directly when needed to avoid circular imports
# Example: from rubric_grader.services.score_calculator import calculate_student_score

__all__ = [
    'score_calculator',
    'threshold_resolver',
    'grading_session',
    'privacy_cipher',
    'persistence',
    'results_store',
    'session_persistence',
    'registry',
]
