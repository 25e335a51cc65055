"""
Rubric and Grading Record Models
================================
Structured models shared by the scoring engine, the grading session and the
persistence layer. JSON payloads use camelCase field names so records written
by the browser client and by this backend are interchangeable.
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


GENERAL_GOAL = "General"

STATUS_DEVELOPMENT = "development"
STATUS_MASTERED = "mastered"
STATUS_EXPERT = "expert"


class CamelModel(BaseModel):
    """Base model: snake_case attributes, camelCase JSON."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ══════════════════════════════════════════════════════════════
# RUBRIC
# ══════════════════════════════════════════════════════════════

class Column(CamelModel):
    id: str
    name: str
    points: float = 0


class Row(CamelModel):
    id: str
    name: str
    learning_goal: Optional[str] = None
    max_points: Optional[float] = None
    calculation_points: float = 0
    is_bonus: bool = False
    routes: List[str] = Field(default_factory=list)
    requirements: List[str] = Field(default_factory=list)
    min_requirements: Optional[int] = None

    @property
    def goal(self) -> str:
        return self.learning_goal or GENERAL_GOAL

    @property
    def required_requirements(self) -> int:
        if self.min_requirements is not None:
            return self.min_requirements
        return len(self.requirements)

    def applies_to_route(self, route: Optional[str]) -> bool:
        """Rows without routes apply to everyone; otherwise the route must match."""
        return not self.routes or route in self.routes


class CriteriaCell(CamelModel):
    row_id: str
    column_id: str
    description: str = ""
    version: Optional[str] = None


class Threshold(CamelModel):
    min: float
    max: Optional[float] = None  # None means "and up"
    status: str = STATUS_DEVELOPMENT
    label: str = ""
    requires_no_lowest: bool = False

    def matches(self, score: float) -> bool:
        if score < self.min:
            return False
        return self.max is None or score <= self.max


class LearningGoalRule(CamelModel):
    learning_goal: str
    threshold: Optional[int] = None
    extra_conditions: List[str] = Field(default_factory=list)
    min_conditions: Optional[int] = None

    @property
    def required_conditions(self) -> int:
        if self.min_conditions is not None:
            return self.min_conditions
        return len(self.extra_conditions)


class MasteryThreshold(CamelModel):
    beheerst: float = 0
    expert: float = 0

    @property
    def is_defined(self) -> bool:
        return self.beheerst > 0 or self.expert > 0


class Rubric(CamelModel):
    id: str
    name: str
    type: str = "assignment"  # assignment | exam
    grading_method: str = "standard"  # standard | mastery
    scoring_mode: str = "discrete"  # discrete | cumulative
    columns: List[Column] = Field(default_factory=list)
    rows: List[Row] = Field(default_factory=list)
    criteria: List[CriteriaCell] = Field(default_factory=list)
    thresholds: List[Threshold] = Field(default_factory=list)
    learning_goal_rules: List[LearningGoalRule] = Field(default_factory=list)
    mastery_thresholds: Dict[str, MasteryThreshold] = Field(default_factory=dict)
    total_possible_points: Optional[float] = None
    versions: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_row_ids(self):
        seen = set()
        for row in self.rows:
            if row.id in seen:
                raise ValueError(f"Duplicate row id: {row.id}")
            seen.add(row.id)
        return self

    @property
    def is_exam(self) -> bool:
        return self.type == "exam"

    @property
    def is_mastery(self) -> bool:
        return self.grading_method == "mastery"

    @property
    def grading_mode(self) -> str:
        """One of: mastery, exam, cumulative, discrete."""
        if self.is_mastery:
            return "mastery"
        if self.is_exam:
            return "exam"
        if self.scoring_mode == "cumulative":
            return "cumulative"
        return "discrete"

    def row_by_id(self, row_id: str) -> Optional[Row]:
        for row in self.rows:
            if row.id == row_id:
                return row
        return None

    def column_index(self, column_id: Optional[str]) -> int:
        """Position of a column in lowest-to-highest order, -1 when unknown."""
        for idx, column in enumerate(self.columns):
            if column.id == column_id:
                return idx
        return -1

    @property
    def lowest_column(self) -> Optional[Column]:
        return self.columns[0] if self.columns else None

    def learning_goals(self) -> List[str]:
        """Learning goal names in order of first appearance."""
        goals = []
        for row in self.rows:
            if row.goal not in goals:
                goals.append(row.goal)
        return goals

    def rows_for_goal(self, goal: str) -> List[Row]:
        return [row for row in self.rows if row.goal == goal]

    def rule_for_goal(self, goal: str) -> Optional[LearningGoalRule]:
        for rule in self.learning_goal_rules:
            if rule.learning_goal == goal:
                return rule
        return None

    def criteria_text(self, row_id: str, column_id: str, version: Optional[str] = None) -> str:
        fallback = ""
        for cell in self.criteria:
            if cell.row_id != row_id or cell.column_id != column_id:
                continue
            if cell.version == version:
                return cell.description
            if cell.version is None:
                fallback = cell.description
        return fallback

    def max_total_points(self) -> float:
        """Highest reachable score, excluding bonus rows."""
        if self.total_possible_points:
            return self.total_possible_points
        total = 0.0
        for row in self.rows:
            if row.is_bonus:
                continue
            if self.is_mastery:
                total += 1
            elif self.is_exam:
                total += row.max_points or 0
            elif self.columns:
                if self.scoring_mode == "cumulative":
                    total += sum(c.points for c in self.columns)
                else:
                    total += max(c.points for c in self.columns)
            total += row.calculation_points
        return total


# ══════════════════════════════════════════════════════════════
# GRADING RECORDS
# ══════════════════════════════════════════════════════════════

class CellFeedback(CamelModel):
    row_id: str
    column_id: Optional[str] = None
    feedback: str = ""


class GradingAnswers(CamelModel):
    """Answer fields shared by in-progress and finalized student records."""
    selections: Dict[str, str] = Field(default_factory=dict)
    row_scores: Dict[str, float] = Field(default_factory=dict)
    cell_feedback: List[CellFeedback] = Field(default_factory=list)
    general_feedback: str = ""
    calculation_correct: Dict[str, bool] = Field(default_factory=dict)
    not_made_rows: Dict[str, bool] = Field(default_factory=dict)
    selected_route: Optional[str] = None
    rubric_version: Optional[str] = None
    extra_conditions_met: Dict[str, Dict[int, bool]] = Field(default_factory=dict)
    met_requirements: Dict[str, List[str]] = Field(default_factory=dict)

    def is_not_made(self, row_id: str) -> bool:
        return bool(self.not_made_rows.get(row_id))

    def has_answer(self, row_id: str) -> bool:
        return (
            bool(self.selections.get(row_id))
            or row_id in self.row_scores
            or row_id in self.met_requirements
        )

    def feedback_for(self, row_id: str) -> Optional[str]:
        for entry in self.cell_feedback:
            if entry.row_id == row_id:
                return entry.feedback
        return None


class StudentGradingData(GradingAnswers):
    student_name: str


class GradedStudent(GradingAnswers):
    id: Optional[str] = None
    student_name: str
    class_name: str = ""
    total_score: float = 0
    status: str = STATUS_DEVELOPMENT
    status_label: str = ""
    graded_at: datetime = Field(default_factory=datetime.now)
    is_self_assessment: bool = Field(default=False, alias="is_self_assessment")

    @property
    def normalized_name(self) -> str:
        return normalize_name(self.student_name)


class GradingSessionState(CamelModel):
    rubric_id: str
    current_row_index: int = 0
    student_order: List[str] = Field(default_factory=list)
    current_student_index: int = 0
    students_data: Dict[str, StudentGradingData] = Field(default_factory=dict)
    completed_student_count: int = 0
    timestamp: int = 0
    roster: List[str] = Field(default_factory=list)
    class_name: str = ""
    first_unit_closed: bool = False

    @property
    def has_progress(self) -> bool:
        return bool(self.student_order) or bool(self.students_data)

    def serialize(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def deserialize(cls, payload: str) -> "GradingSessionState":
        return cls.model_validate_json(payload)


def normalize_name(name: Optional[str]) -> str:
    """Student names match case-insensitively, ignoring surrounding whitespace."""
    return (name or "").strip().lower()
