"""
Threshold Resolver
==================
Maps a total score to a status label.

Point rubrics walk their thresholds from the highest minimum down. A threshold
flagged requires_no_lowest is skipped (the student drops to the next band)
when any regular row was scored at the lowest column.

Mastery rubrics are judged per learning goal instead: a goal is passed when
enough of its questions are correct and enough extra conditions are met.
"""
import math
from typing import Dict, List, Optional

from pydantic import BaseModel

from rubric_grader.models import (
    GradingAnswers, Rubric, Threshold,
    STATUS_DEVELOPMENT, STATUS_MASTERED, STATUS_EXPERT,
)
from rubric_grader.services.score_calculator import (
    calculate_student_score, has_lowest_column_selected,
)

# Share of a learning goal's questions that must be correct when no rule is set
DEFAULT_MASTERY_RATIO = 0.55

ROUTE_LABELS = {
    STATUS_EXPERT: "Expert",
    STATUS_MASTERED: "Beheerst",
    STATUS_DEVELOPMENT: "In Ontwikkeling",
}


class LearningGoalResult(BaseModel):
    learning_goal: str
    correct_count: float
    threshold: int
    conditions_met: int
    required_conditions: int
    is_passed: bool


class StatusResult(BaseModel):
    total_score: float
    status: str
    status_label: str
    learning_goals: List[LearningGoalResult] = []


def resolve_threshold(thresholds: List[Threshold], total_score: float,
                      has_lowest_selected: bool) -> Optional[Threshold]:
    """
    Find the threshold band for a score.

    Returns the lowest-ranked threshold when nothing matches, and None only
    when there are no thresholds at all.
    """
    if not thresholds:
        return None

    ordered = sorted(thresholds, key=lambda t: t.min, reverse=True)
    for threshold in ordered:
        if not threshold.matches(total_score):
            continue
        if threshold.requires_no_lowest and has_lowest_selected:
            continue
        return threshold

    return ordered[-1]


def default_goal_threshold(row_count: int) -> int:
    return math.ceil(DEFAULT_MASTERY_RATIO * row_count)


def evaluate_learning_goals(rubric: Rubric, answers: GradingAnswers,
                            row_scores: Optional[Dict[str, float]] = None) -> List[LearningGoalResult]:
    """Pass/fail per learning goal for a mastery rubric."""
    if row_scores is None:
        row_scores = calculate_student_score(rubric, answers).row_scores

    results = []
    for goal in rubric.learning_goals():
        rows = [row for row in rubric.rows_for_goal(goal)
                if row.applies_to_route(answers.selected_route)]
        rule = rubric.rule_for_goal(goal)

        correct_count = sum(row_scores.get(row.id, 0) for row in rows)
        met = answers.extra_conditions_met.get(goal, {})
        conditions_met = sum(1 for value in met.values() if value)

        if rule is not None and rule.threshold is not None:
            threshold = rule.threshold
        else:
            threshold = default_goal_threshold(len(rows))
        required = rule.required_conditions if rule is not None else 0

        results.append(LearningGoalResult(
            learning_goal=goal,
            correct_count=correct_count,
            threshold=threshold,
            conditions_met=conditions_met,
            required_conditions=required,
            is_passed=correct_count >= threshold and conditions_met >= required,
        ))
    return results


def route_thresholds(rubric: Rubric, route: Optional[str]) -> Optional[List[Threshold]]:
    """Threshold scale for a route, or None when the rubric defines none."""
    if not route:
        return None
    scale = rubric.mastery_thresholds.get(route)
    if scale is None or not scale.is_defined:
        return None

    thresholds = [Threshold(min=0, status=STATUS_DEVELOPMENT,
                            label=ROUTE_LABELS[STATUS_DEVELOPMENT])]
    if scale.beheerst > 0:
        thresholds.append(Threshold(min=scale.beheerst, status=STATUS_MASTERED,
                                    label=ROUTE_LABELS[STATUS_MASTERED]))
    if scale.expert > 0:
        thresholds.append(Threshold(min=scale.expert, status=STATUS_EXPERT,
                                    label=ROUTE_LABELS[STATUS_EXPERT]))
    return thresholds


def thresholds_for_student(rubric: Rubric, answers: GradingAnswers) -> List[Threshold]:
    return route_thresholds(rubric, answers.selected_route) or rubric.thresholds


def resolve_student_status(rubric: Rubric, answers: GradingAnswers,
                           total_score: Optional[float] = None) -> StatusResult:
    """Final status for one student, choosing the right scale for the rubric."""
    score = calculate_student_score(rubric, answers)
    if total_score is None:
        total_score = score.total_score

    goals = []
    if rubric.is_mastery:
        goals = evaluate_learning_goals(rubric, answers, score.row_scores)
        if route_thresholds(rubric, answers.selected_route) is None:
            passed = bool(goals) and all(goal.is_passed for goal in goals)
            status = STATUS_MASTERED if passed else STATUS_DEVELOPMENT
            return StatusResult(total_score=total_score, status=status,
                                status_label=ROUTE_LABELS[status], learning_goals=goals)

    threshold = resolve_threshold(
        thresholds_for_student(rubric, answers),
        total_score,
        has_lowest_column_selected(rubric, answers),
    )
    if threshold is None:
        return StatusResult(total_score=total_score, status=STATUS_DEVELOPMENT,
                            status_label=ROUTE_LABELS[STATUS_DEVELOPMENT], learning_goals=goals)

    return StatusResult(total_score=total_score, status=threshold.status,
                        status_label=threshold.label, learning_goals=goals)
