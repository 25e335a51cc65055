"""
Horizontal Grading Session
==========================
Bulk grading one rubric unit at a time for every student.

A unit is one rubric row, or one learning-goal group of rows on a mastery
rubric. While the first unit is graded the student roster is collected in
grading order; that order is fixed for every later unit.

Phases:
    NAMING_FIRST_UNIT -> GRADING_UNIT -> COMPLETED

Once the first unit is closed, stepping back into it only regrades the
students already named; no new name is accepted.

Only commit() and toggle_not_made() change student data. The autosave
thread reads the session through to_state(), so every read and write of the
pointer state goes through the session lock.
"""
import logging
import threading
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from rubric_grader.exceptions import InvalidCommitError, SessionStateError
from rubric_grader.models import (
    CamelModel, CellFeedback, GradedStudent, GradingSessionState, Row, Rubric,
    StudentGradingData, normalize_name,
)
from rubric_grader.services.score_calculator import calculate_student_score
from rubric_grader.services.threshold_resolver import resolve_student_status

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    NAMING_FIRST_UNIT = "naming_first_unit"
    GRADING_UNIT = "grading_unit"
    COMPLETED = "completed"


class GradingUnit(BaseModel):
    index: int
    rows: List[Row]
    learning_goal: Optional[str] = None

    @property
    def row_ids(self) -> List[str]:
        return [row.id for row in self.rows]

    def applies_to(self, route: Optional[str]) -> bool:
        return any(row.applies_to_route(route) for row in self.rows)


def build_units(rubric: Rubric) -> List[GradingUnit]:
    """One unit per row, or one per learning goal on mastery rubrics."""
    if rubric.is_mastery:
        return [
            GradingUnit(index=idx, rows=rubric.rows_for_goal(goal), learning_goal=goal)
            for idx, goal in enumerate(rubric.learning_goals())
        ]
    return [GradingUnit(index=idx, rows=[row], learning_goal=row.learning_goal)
            for idx, row in enumerate(rubric.rows)]


class UnitAnswer(CamelModel):
    """What the grader entered for one student on the current unit."""
    column_id: Optional[str] = None
    score: Optional[float] = None
    row_scores: Dict[str, float] = Field(default_factory=dict)
    met_requirements: Dict[str, List[str]] = Field(default_factory=dict)
    extra_conditions_met: Dict[int, bool] = Field(default_factory=dict)
    feedback: Optional[str] = None
    row_feedback: Dict[str, str] = Field(default_factory=dict)
    general_feedback: Optional[str] = None
    calculation_correct: Optional[bool] = None
    not_made: bool = False
    selected_route: Optional[str] = None
    rubric_version: Optional[str] = None

    def answers_unit(self, unit: GradingUnit) -> bool:
        if self.not_made or self.score is not None or self.column_id:
            return True
        return any(row_id in self.row_scores or row_id in self.met_requirements
                   for row_id in unit.row_ids)


class SessionProgress(CamelModel):
    phase: Phase
    unit_index: int
    unit_count: int
    student_index: int
    total_students: int
    students_done_in_unit: int
    completed_cells: int
    total_cells: int
    progress_percent: float
    unit_progress_percent: float
    completed_student_count: int
    avg_seconds_per_student: int


class GradingSession:
    """State machine for one horizontal grading session on one rubric."""

    def __init__(self, rubric: Rubric, roster: Optional[List[str]] = None,
                 class_name: str = "", clock: Callable[[], float] = time.time):
        self.rubric = rubric
        self.units = build_units(rubric)
        self.roster = [name.strip() for name in (roster or []) if name and name.strip()]
        self.class_name = class_name
        self.clock = clock

        self.unit_index = 0
        self.student_index = 0
        self.student_order: List[str] = []
        self.students_data: Dict[str, StudentGradingData] = {}
        self.completed_student_count = 0
        self.phase = Phase.NAMING_FIRST_UNIT if self.units else Phase.COMPLETED
        self.first_unit_closed = False
        self.dirty = False

        self._started_at = clock()
        self._lock = threading.RLock()
        self._commit_listeners: List[Callable[["GradingSession"], None]] = []

    # ── Listeners ──────────────────────────────────────────────

    def add_commit_listener(self, callback: Callable[["GradingSession"], None]):
        """Called after every committed unit, outside the session lock."""
        self._commit_listeners.append(callback)

    def _notify_commit(self):
        for callback in list(self._commit_listeners):
            try:
                callback(self)
            except Exception as e:
                logger.error("Commit listener failed: %s", e)

    # ── Pointer state ──────────────────────────────────────────

    @property
    def is_first_unit(self) -> bool:
        return self.unit_index == 0

    @property
    def is_completed(self) -> bool:
        return self.phase == Phase.COMPLETED

    @property
    def current_unit(self) -> Optional[GradingUnit]:
        if self.is_completed:
            return None
        return self.units[self.unit_index]

    @property
    def is_naming_new_student(self) -> bool:
        """True when the first unit waits for a new name from the roster."""
        return (self.phase == Phase.NAMING_FIRST_UNIT
                and not self.first_unit_closed
                and self.student_index >= len(self.student_order))

    @property
    def current_student_name(self) -> Optional[str]:
        if self.is_completed or self.is_naming_new_student:
            return None
        return self.student_order[self.student_index]

    def available_names(self, query: str = "") -> List[str]:
        """Roster names not graded yet on the first unit, filtered for autocomplete."""
        if self.first_unit_closed:
            return []
        taken = {normalize_name(name) for name in self.student_order}
        query = query.strip().lower()
        return [name for name in self.roster
                if normalize_name(name) not in taken and query in name.lower()]

    def student_data(self, name: str) -> StudentGradingData:
        with self._lock:
            data = self.students_data.get(name)
            if data is None:
                return StudentGradingData(student_name=name)
            return data.model_copy(deep=True)

    def _route_of(self, name: str) -> Optional[str]:
        data = self.students_data.get(name)
        return data.selected_route if data else None

    def _applies(self, unit_index: int, name: str) -> bool:
        if unit_index == 0:
            return True
        return self.units[unit_index].applies_to(self._route_of(name))

    def _next_applicable(self, unit_index: int, start: int) -> Optional[int]:
        for idx in range(max(start, 0), len(self.student_order)):
            if self._applies(unit_index, self.student_order[idx]):
                return idx
        return None

    def _prev_applicable(self, unit_index: int, start: int) -> Optional[int]:
        for idx in range(min(start, len(self.student_order) - 1), -1, -1):
            if self._applies(unit_index, self.student_order[idx]):
                return idx
        return None

    def _enter_unit(self, unit_index: int):
        """Move to the first student of the first unit from unit_index on that applies."""
        self.first_unit_closed = True
        while unit_index < len(self.units):
            first = self._next_applicable(unit_index, 0)
            if first is not None:
                self.unit_index = unit_index
                self.student_index = first
                self.phase = Phase.GRADING_UNIT
                return
            unit_index += 1

        self.unit_index = len(self.units)
        self.student_index = 0
        self.phase = Phase.COMPLETED
        logger.info("Grading complete for rubric %s (%d students)",
                    self.rubric.id, len(self.student_order))

    def _advance(self):
        if self.phase == Phase.NAMING_FIRST_UNIT:
            self.student_index += 1
            roster_done = self.roster and len(self.student_order) >= len(self.roster)
            closed = roster_done or self.first_unit_closed
            if self.student_index >= len(self.student_order) and closed:
                self._enter_unit(1)
            return

        next_idx = self._next_applicable(self.unit_index, self.student_index + 1)
        if next_idx is None:
            self._enter_unit(self.unit_index + 1)
        else:
            self.student_index = next_idx

    # ── Transitions ────────────────────────────────────────────

    def _resolve_name(self, student_name: Optional[str]) -> str:
        if self.is_naming_new_student:
            return (student_name or "").strip()
        return self.current_student_name or ""

    def _validate(self, answer: UnitAnswer, student_name: Optional[str]) -> Optional[str]:
        if self.is_completed:
            return "Grading is already complete"
        name = self._resolve_name(student_name)
        if not name:
            return "A student name is required"
        if self.is_naming_new_student:
            if normalize_name(name) in {normalize_name(n) for n in self.student_order}:
                return f"{name} has already been graded for this unit"
        if not answer.answers_unit(self.current_unit):
            return "Select a level or enter a score before continuing"
        if answer.column_id and self.rubric.column_index(answer.column_id) == -1:
            return f"Unknown column: {answer.column_id}"
        return None

    def can_proceed(self, answer: UnitAnswer, student_name: Optional[str] = None) -> bool:
        with self._lock:
            return self._validate(answer, student_name) is None

    def commit(self, answer: UnitAnswer, student_name: Optional[str] = None) -> StudentGradingData:
        """
        Record the current student's answer for the current unit and advance.

        Args:
            answer: The grader's input for this unit
            student_name: Required while naming students on the first unit,
                ignored afterwards (the fixed order decides who is next)

        Raises:
            InvalidCommitError: when the name or the answer is missing
        """
        with self._lock:
            error = self._validate(answer, student_name)
            if error:
                raise InvalidCommitError(error)

            name = self._resolve_name(student_name)
            merged = self._merge(name, answer)
            self.completed_student_count += 1
            if self.is_naming_new_student:
                self.student_order.append(name)
            self.dirty = True
            self._advance()

        self._notify_commit()
        return merged.model_copy(deep=True)

    def _merge(self, name: str, answer: UnitAnswer) -> StudentGradingData:
        existing = self.students_data.get(name)
        data = existing.model_copy(deep=True) if existing else StudentGradingData(student_name=name)
        unit = self.current_unit

        if answer.selected_route is not None:
            data.selected_route = answer.selected_route
        if answer.rubric_version is not None:
            data.rubric_version = answer.rubric_version
        if answer.general_feedback:
            data.general_feedback = answer.general_feedback

        for row in unit.rows:
            if answer.not_made:
                data.not_made_rows[row.id] = True
                continue
            data.not_made_rows.pop(row.id, None)

            if answer.column_id and len(unit.rows) == 1:
                data.selections[row.id] = answer.column_id
            if answer.score is not None and len(unit.rows) == 1:
                data.row_scores[row.id] = answer.score
            if row.id in answer.row_scores:
                data.row_scores[row.id] = answer.row_scores[row.id]
            if row.id in answer.met_requirements:
                data.met_requirements[row.id] = list(answer.met_requirements[row.id])

            if row.calculation_points > 0:
                correct = answer.calculation_correct
                data.calculation_correct[row.id] = True if correct is None else correct

            feedback = answer.row_feedback.get(row.id)
            if feedback is None and len(unit.rows) == 1:
                feedback = answer.feedback
            if feedback:
                self._set_feedback(data, row.id, data.selections.get(row.id), feedback)

        if unit.learning_goal and answer.extra_conditions_met:
            data.extra_conditions_met[unit.learning_goal] = dict(answer.extra_conditions_met)

        self.students_data[name] = data
        return data

    @staticmethod
    def _set_feedback(data: StudentGradingData, row_id: str, column_id: Optional[str], feedback: str):
        for idx, entry in enumerate(data.cell_feedback):
            if entry.row_id == row_id and entry.column_id == column_id:
                data.cell_feedback[idx] = CellFeedback(row_id=row_id, column_id=column_id, feedback=feedback)
                return
        data.cell_feedback.append(CellFeedback(row_id=row_id, column_id=column_id, feedback=feedback))

    def toggle_not_made(self, student_name: Optional[str] = None) -> bool:
        """
        Flip "not made" on the current unit for the current student.

        Marking it counts as a valid commit and advances. Unmarking clears the
        unit's answer and stays put, so a new answer is needed to continue.

        Returns:
            The new not-made value
        """
        with self._lock:
            name = self._resolve_name(student_name)
            data = self.students_data.get(name) if name else None
            unit = self.current_unit
            if data is None or unit is None or not all(data.is_not_made(r) for r in unit.row_ids):
                marked = True
            else:
                marked = False
                for row_id in unit.row_ids:
                    data.not_made_rows.pop(row_id, None)
                    data.selections.pop(row_id, None)
                    data.row_scores.pop(row_id, None)
                    data.met_requirements.pop(row_id, None)
                self.dirty = True

        if marked:
            self.commit(UnitAnswer(not_made=True), student_name)
        return marked

    def finish_roster(self):
        """Close the first unit early, e.g. when part of the roster is absent."""
        with self._lock:
            if self.phase != Phase.NAMING_FIRST_UNIT:
                return
            if not self.student_order:
                raise InvalidCommitError("Grade at least one student before closing the roster")
            self._enter_unit(1)
            self.dirty = True

    def go_back(self) -> bool:
        """
        Step back one student. Returns False when already at the very start.
        """
        with self._lock:
            if self.phase == Phase.NAMING_FIRST_UNIT:
                if self.student_index == 0:
                    return False
                self.student_index -= 1
                self.dirty = True
                return True

            if self.phase == Phase.GRADING_UNIT:
                prev = self._prev_applicable(self.unit_index, self.student_index - 1)
                if prev is not None:
                    self.student_index = prev
                    self.dirty = True
                    return True

            unit_index = self.unit_index - 1
            while unit_index >= 1:
                prev = self._prev_applicable(unit_index, len(self.student_order) - 1)
                if prev is not None:
                    self.unit_index = unit_index
                    self.student_index = prev
                    self.phase = Phase.GRADING_UNIT
                    self.dirty = True
                    return True
                unit_index -= 1

            if not self.student_order:
                return False
            self.unit_index = 0
            self.student_index = len(self.student_order) - 1
            self.phase = Phase.NAMING_FIRST_UNIT
            self.dirty = True
            return True

    # ── Results ────────────────────────────────────────────────

    def graded_student(self, name: str, class_name: Optional[str] = None) -> GradedStudent:
        data = self.student_data(name)
        score = calculate_student_score(self.rubric, data)
        status = resolve_student_status(self.rubric, data, score.total_score)
        fields = data.model_dump(exclude={"student_name"})
        return GradedStudent(
            id=uuid.uuid4().hex,
            student_name=name,
            class_name=self.class_name if class_name is None else class_name,
            total_score=score.total_score,
            status=status.status,
            status_label=status.status_label,
            graded_at=datetime.now(),
            **fields,
        )

    def finish(self, class_name: Optional[str] = None) -> List[GradedStudent]:
        """Score every student in grading order."""
        with self._lock:
            names = list(self.student_order)
        return [self.graded_student(name, class_name) for name in names]

    def progress(self) -> SessionProgress:
        with self._lock:
            first_unit = self.phase == Phase.NAMING_FIRST_UNIT and not self.first_unit_closed
            total_students = max(len(self.roster), len(self.student_order)) if first_unit \
                else len(self.student_order)
            total_cells = len(self.units) * total_students

            completed_cells = 0
            for data in self.students_data.values():
                for unit in self.units:
                    if any(data.has_answer(r) or data.is_not_made(r) for r in unit.row_ids):
                        completed_cells += 1

            if self.is_completed:
                done_in_unit = total_students
            elif first_unit:
                done_in_unit = len(self.student_order)
            else:
                done_in_unit = self.student_index

            elapsed = self.clock() - self._started_at
            avg = round(elapsed / self.completed_student_count) if self.completed_student_count else 0

            return SessionProgress(
                phase=self.phase,
                unit_index=self.unit_index,
                unit_count=len(self.units),
                student_index=self.student_index,
                total_students=total_students,
                students_done_in_unit=done_in_unit,
                completed_cells=completed_cells,
                total_cells=total_cells,
                progress_percent=round(completed_cells / total_cells * 100, 1) if total_cells else 0,
                unit_progress_percent=round(done_in_unit / total_students * 100, 1) if total_students else 0,
                completed_student_count=self.completed_student_count,
                avg_seconds_per_student=avg,
            )

    def current_criteria(self) -> List[Dict]:
        """Level descriptions for the current single-row unit, in the student's version."""
        with self._lock:
            unit = self.current_unit
            if unit is None or len(unit.rows) != 1:
                return []
            name = self.current_student_name
            version = self.students_data[name].rubric_version \
                if name and name in self.students_data else None
            row = unit.rows[0]
            return [{
                "columnId": column.id,
                "name": column.name,
                "points": column.points,
                "description": self.rubric.criteria_text(row.id, column.id, version),
            } for column in self.rubric.columns]

    # ── Serialization ──────────────────────────────────────────

    def to_state(self) -> GradingSessionState:
        with self._lock:
            return GradingSessionState(
                rubric_id=self.rubric.id,
                current_row_index=self.unit_index,
                student_order=list(self.student_order),
                current_student_index=self.student_index,
                students_data={name: data.model_copy(deep=True)
                               for name, data in self.students_data.items()},
                completed_student_count=self.completed_student_count,
                timestamp=int(self.clock() * 1000),
                roster=list(self.roster),
                class_name=self.class_name,
                first_unit_closed=self.first_unit_closed,
            )

    def snapshot_and_clean(self) -> GradingSessionState:
        """Take a snapshot for saving and clear the dirty flag in one step."""
        with self._lock:
            state = self.to_state()
            self.dirty = False
            return state

    @classmethod
    def from_state(cls, rubric: Rubric, state: GradingSessionState,
                   clock: Callable[[], float] = time.time) -> "GradingSession":
        """Rebuild a session exactly where a saved state left off."""
        if state.rubric_id != rubric.id:
            raise SessionStateError(
                f"Session belongs to rubric {state.rubric_id}, not {rubric.id}")

        session = cls(rubric, roster=state.roster, class_name=state.class_name, clock=clock)
        session.student_order = list(state.student_order)
        session.students_data = {name: data.model_copy(deep=True)
                                 for name, data in state.students_data.items()}
        session.completed_student_count = state.completed_student_count
        session.first_unit_closed = state.first_unit_closed or state.current_row_index > 0

        unit_index = min(max(state.current_row_index, 0), len(session.units))
        student_index = max(state.current_student_index, 0)
        if unit_index >= len(session.units):
            session.unit_index = len(session.units)
            session.student_index = 0
            session.phase = Phase.COMPLETED
        elif unit_index == 0:
            session.unit_index = 0
            last = len(session.student_order)
            if session.first_unit_closed:
                last -= 1
            session.student_index = max(min(student_index, last), 0)
            session.phase = Phase.NAMING_FIRST_UNIT
        else:
            session.unit_index = unit_index
            next_idx = session._next_applicable(unit_index, student_index)
            if next_idx is None:
                session._enter_unit(unit_index + 1)
            else:
                session.student_index = next_idx
                session.phase = Phase.GRADING_UNIT

        session.dirty = False
        return session
