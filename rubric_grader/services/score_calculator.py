"""
Score Calculator
================
Turns one student's raw selections into row scores and a total.

Four grading modes are supported:
- discrete:   a row is worth the points of the selected column
- cumulative: a row is worth the points of every column up to the selection
- exam:       a row is worth the manually entered score
- mastery:    a row is a 0/1 checklist result

Pure functions only; nothing here touches storage or session state.
"""
from typing import Dict, Optional

from pydantic import BaseModel, Field

from rubric_grader.models import GradingAnswers, Row, Rubric


class ScoreResult(BaseModel):
    total_score: float = 0
    row_scores: Dict[str, float] = Field(default_factory=dict)


def column_points(rubric: Rubric, column_id: Optional[str]) -> float:
    """Points for a selected column; unknown column ids score 0."""
    idx = rubric.column_index(column_id)
    if idx == -1:
        return 0
    if rubric.scoring_mode == "cumulative":
        return sum(column.points for column in rubric.columns[:idx + 1])
    return rubric.columns[idx].points


def _clamp(value: float, upper: Optional[float]) -> float:
    value = max(0.0, float(value))
    if upper is not None:
        value = min(value, float(upper))
    return value


def mastery_row_result(row: Row, answers: GradingAnswers) -> int:
    """0/1 checklist result for a mastery row."""
    if row.requirements and row.id in answers.met_requirements:
        met = answers.met_requirements[row.id]
        return 1 if len(met) >= row.required_requirements else 0
    stored = answers.row_scores.get(row.id)
    return 1 if stored is not None and stored > 0 else 0


def calculate_row_score(rubric: Rubric, row: Row, answers: GradingAnswers) -> float:
    if not row.applies_to_route(answers.selected_route):
        return 0
    if answers.is_not_made(row.id):
        return 0

    mode = rubric.grading_mode
    if mode == "exam":
        stored = answers.row_scores.get(row.id)
        points = _clamp(stored, row.max_points) if stored is not None else 0
    elif mode == "mastery":
        points = mastery_row_result(row, answers)
    else:
        points = column_points(rubric, answers.selections.get(row.id))

    # Calculation points are never earned on an unanswered row
    if row.calculation_points > 0 and answers.has_answer(row.id):
        if answers.calculation_correct.get(row.id) is not False:
            points += row.calculation_points

    return points


def calculate_student_score(rubric: Optional[Rubric], answers: Optional[GradingAnswers]) -> ScoreResult:
    """
    Score every row of the rubric for one student.

    Args:
        rubric: The rubric being graded (None is tolerated for stale references)
        answers: A StudentGradingData or GradedStudent

    Returns:
        ScoreResult with the total and a score per row id
    """
    if rubric is None or answers is None:
        return ScoreResult()

    row_scores = {}
    for row in rubric.rows:
        row_scores[row.id] = calculate_row_score(rubric, row, answers)

    return ScoreResult(total_score=sum(row_scores.values()), row_scores=row_scores)


def has_lowest_column_selected(rubric: Rubric, answers: GradingAnswers) -> bool:
    """True when a non-bonus row that applies to the student sits at the lowest column."""
    lowest = rubric.lowest_column
    if lowest is None:
        return False
    for row in rubric.rows:
        if row.is_bonus or not row.applies_to_route(answers.selected_route):
            continue
        if answers.is_not_made(row.id):
            continue
        if answers.selections.get(row.id) == lowest.id:
            return True
    return False


def percentage(rubric: Rubric, total_score: float) -> int:
    total_possible = rubric.max_total_points() or 100  # avoid div/0
    return round(total_score / total_possible * 100)
