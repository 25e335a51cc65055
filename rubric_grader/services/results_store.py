"""
Results Store
=============
Durable record of finalized per-student grades.

Saving is an upsert keyed by the normalized student name: re-grading "Jan "
after "jan" updates the stored record instead of adding a second one.
Self-assessments submitted by students are shown only for students the
teacher has not graded; teacher input always wins.
"""
import logging
import threading
from typing import Dict, List, Optional, Tuple

from rubric_grader.exceptions import RecordStoreError
from rubric_grader.models import GradedStudent, normalize_name

logger = logging.getLogger(__name__)


def merge_self_assessments(teacher_results: List[GradedStudent],
                           self_assessments: List[GradedStudent]) -> List[GradedStudent]:
    """Add self-assessments for students without a teacher grade."""
    merged = list(teacher_results)
    graded_names = {s.normalized_name for s in teacher_results}
    for entry in self_assessments:
        if entry.normalized_name in graded_names:
            continue
        merged.append(entry.model_copy(update={"is_self_assessment": True}))
        graded_names.add(entry.normalized_name)
    return merged


class ResultsStore:
    """Per-rubric graded students, cached in memory and persisted per strategy."""

    def __init__(self, selector):
        self.selector = selector
        self._results: Dict[Tuple[str, str], List[GradedStudent]] = {}
        self._lock = threading.Lock()

    def _cached(self, cache_key) -> List[GradedStudent]:
        with self._lock:
            return list(self._results.get(cache_key, []))

    def results_for(self, rubric_id: str) -> List[GradedStudent]:
        """Cached results for the current user, no I/O."""
        return self._cached((self.selector.select().scope, rubric_id))

    def can_persist(self) -> bool:
        return self.selector.select().can_persist

    def fetch(self, rubric_id: str) -> List[GradedStudent]:
        """
        Reload results for a rubric from storage.

        Undecryptable rows are skipped by the strategy. When storage is
        unavailable (no privacy key, record store failure) the cached list is
        returned unchanged.
        """
        strategy = self.selector.select()
        cache_key = (strategy.scope, rubric_id)
        if not strategy.can_persist:
            logger.warning("No privacy key set, results for rubric %s not fetched", rubric_id)
            return self._cached(cache_key)

        try:
            teacher_results = strategy.load_results(rubric_id)
            self_assessments = strategy.load_self_assessments(rubric_id)
        except RecordStoreError as e:
            logger.error("Error fetching results for rubric %s: %s", rubric_id, e)
            return self._cached(cache_key)

        merged = merge_self_assessments(teacher_results, self_assessments)
        logger.info("Loaded %d results for rubric %s (%d self-assessments offered)",
                    len(merged), rubric_id, len(self_assessments))
        with self._lock:
            self._results[cache_key] = merged
        return list(merged)

    def find(self, rubric_id: str, student_name: str) -> Optional[GradedStudent]:
        target = normalize_name(student_name)
        for student in self.results_for(rubric_id):
            if student.normalized_name == target:
                return student
        return None

    def save(self, rubric_id: str, student: GradedStudent) -> Optional[GradedStudent]:
        """
        Upsert one graded student.

        Returns the stored record (carrying its persisted id), or None when
        nothing could be written.
        """
        strategy = self.selector.select()
        cache_key = (strategy.scope, rubric_id)
        if not strategy.can_persist:
            logger.warning("No privacy key set, result for rubric %s not saved", rubric_id)
            return None

        with self._lock:
            loaded = cache_key in self._results
        if not loaded:
            self.fetch(rubric_id)

        existing = self.find(rubric_id, student.student_name)
        existing_id = None
        if existing is not None and not existing.is_self_assessment:
            existing_id = existing.id

        record = student.model_copy(update={"is_self_assessment": False})
        try:
            saved = strategy.write_result(rubric_id, record, existing_id)
        except RecordStoreError as e:
            logger.error("Save failed for rubric %s: %s", rubric_id, e)
            return None

        with self._lock:
            current = list(self._results.get(cache_key, []))
            for idx, entry in enumerate(current):
                if entry.normalized_name == saved.normalized_name:
                    current[idx] = saved
                    break
            else:
                current.append(saved)
            self._results[cache_key] = current
        return saved

    def save_many(self, rubric_id: str, students: List[GradedStudent]) -> List[GradedStudent]:
        saved = []
        for student in students:
            stored = self.save(rubric_id, student)
            if stored is not None:
                saved.append(stored)
        return saved
