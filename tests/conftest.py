"""
Shared test fixtures for the rubric grader.
Local storage lives under tmp_path and the remote record store is an
in-memory fake. Zero network calls.
"""
import concurrent.futures
import copy
import uuid

import pytest

from rubric_grader.auth import StaticAuthProvider, User
from rubric_grader.config import config
from rubric_grader.exceptions import RecordStoreError
from rubric_grader.models import Rubric
from rubric_grader.rubric_io import RubricLibrary
from rubric_grader.services.persistence import PersistenceSelector
from rubric_grader.services.privacy_cipher import PrivacyKeyring
from rubric_grader.storage import JsonFileStorage, RecordStore


class InMemoryRecordStore(RecordStore):
    """Record store fake with Supabase-like upsert semantics."""

    def __init__(self):
        self.rows = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise RecordStoreError("store offline")

    def select(self, order_by=None, desc=False, limit=None, **filters):
        self._check()
        rows = [copy.deepcopy(r) for r in self.rows
                if all(r.get(k) == v for k, v in filters.items())]
        if order_by:
            rows.sort(key=lambda r: r.get(order_by) or "", reverse=desc)
        if limit:
            rows = rows[:limit]
        return rows

    def upsert(self, record):
        self._check()
        record = {k: v for k, v in record.items() if v is not None}
        for idx, row in enumerate(self.rows):
            if record.get("id") and row["id"] == record["id"]:
                self.rows[idx] = {**row, **record}
                return copy.deepcopy(self.rows[idx])
        record.setdefault("id", str(uuid.uuid4()))
        self.rows.append(record)
        return copy.deepcopy(record)

    def delete(self, **filters):
        self._check()
        self.rows = [r for r in self.rows
                     if not all(r.get(k) == v for k, v in filters.items())]


class ImmediateExecutor:
    """Runs submitted work inline so autosave tests are deterministic."""

    def submit(self, fn, *args, **kwargs):
        future = concurrent.futures.Future()
        future.set_result(fn(*args, **kwargs))
        return future

    def shutdown(self, wait=True):
        pass


@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch):
    """Cheap key derivation keeps the encryption tests quick."""
    monkeypatch.setattr(config, "kdf_iterations", 1000)


@pytest.fixture
def storage(tmp_path):
    return JsonFileStorage(tmp_path)


@pytest.fixture
def keyring(storage):
    return PrivacyKeyring(storage)


@pytest.fixture
def teacher():
    return User(id="teacher-1", email="teacher@school.nl")


@pytest.fixture
def record_stores():
    return {
        "results": InMemoryRecordStore(),
        "sessions": InMemoryRecordStore(),
        "self_assessments": InMemoryRecordStore(),
    }


@pytest.fixture
def guest_selector(storage, keyring):
    return PersistenceSelector(StaticAuthProvider(None), storage, keyring)


@pytest.fixture
def remote_selector(storage, keyring, teacher, record_stores):
    return PersistenceSelector(
        StaticAuthProvider(teacher), storage, keyring,
        results_store=record_stores["results"],
        sessions_store=record_stores["sessions"],
        self_assessment_store=record_stores["self_assessments"],
    )


@pytest.fixture
def library(storage):
    return RubricLibrary(storage)


def make_discrete_rubric(**overrides):
    data = {
        "id": "rubric-discrete",
        "name": "Lab report",
        "scoringMode": "discrete",
        "columns": [
            {"id": "poor", "name": "Poor", "points": 0},
            {"id": "good", "name": "Good", "points": 5},
            {"id": "excellent", "name": "Excellent", "points": 10},
        ],
        "rows": [
            {"id": "method", "name": "Method", "calculationPoints": 2},
            {"id": "analysis", "name": "Analysis"},
            {"id": "extra", "name": "Extra credit", "isBonus": True},
        ],
        "criteria": [
            {"rowId": "method", "columnId": "good", "description": "Mostly correct"},
            {"rowId": "method", "columnId": "good", "description": "Version B text", "version": "B"},
        ],
        "thresholds": [
            {"min": 0, "max": 9, "status": "development", "label": "In Development"},
            {"min": 10, "max": 19, "status": "mastered", "label": "Mastered"},
            {"min": 20, "max": None, "status": "expert", "label": "Expert", "requiresNoLowest": True},
        ],
    }
    data.update(overrides)
    return Rubric.model_validate(data)


@pytest.fixture
def discrete_rubric():
    return make_discrete_rubric()


@pytest.fixture
def cumulative_rubric():
    return make_discrete_rubric(
        id="rubric-cumulative",
        scoringMode="cumulative",
        columns=[
            {"id": "c1", "name": "Start", "points": 1},
            {"id": "c2", "name": "Mid", "points": 2},
            {"id": "c3", "name": "Top", "points": 3},
        ],
        rows=[{"id": "r1", "name": "Only row"}],
        criteria=[],
    )


@pytest.fixture
def exam_rubric():
    return Rubric.model_validate({
        "id": "rubric-exam",
        "name": "Chapter test",
        "type": "exam",
        "rows": [
            {"id": "q1", "name": "Question 1", "maxPoints": 5},
            {"id": "q2", "name": "Question 2", "maxPoints": 3, "calculationPoints": 1},
        ],
        "thresholds": [
            {"min": 0, "status": "development", "label": "Onvoldoende"},
            {"min": 5, "status": "mastered", "label": "Voldoende"},
        ],
    })


@pytest.fixture
def mastery_rubric():
    return Rubric.model_validate({
        "id": "rubric-mastery",
        "name": "Numbers checklist",
        "type": "exam",
        "gradingMethod": "mastery",
        "rows": [
            {"id": "q1", "name": "Add fractions", "learningGoal": "Fractions"},
            {"id": "q2", "name": "Simplify", "learningGoal": "Fractions"},
            {"id": "q3", "name": "Compare", "learningGoal": "Fractions"},
            {"id": "q4", "name": "Round", "learningGoal": "Decimals",
             "requirements": ["units", "rounding"], "minRequirements": 1},
        ],
        "learningGoalRules": [
            {"learningGoal": "Fractions", "extraConditions": ["Shows work"]},
        ],
    })


@pytest.fixture
def route_rubric():
    return make_discrete_rubric(
        id="rubric-routes",
        rows=[
            {"id": "r1", "name": "Shared"},
            {"id": "r2", "name": "Orange only", "routes": ["orange"]},
            {"id": "r3", "name": "Shared again"},
        ],
        criteria=[],
        masteryThresholds={"orange": {"beheerst": 10, "expert": 20}},
    )
