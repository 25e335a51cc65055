"""
Test: Flask API: rubric import, grading session lifecycle, results, privacy key, auth.
"""
import json
import time

import jwt
import pytest

from rubric_grader.app import create_app
from rubric_grader.auth import RequestAuthProvider
from rubric_grader.rubric_io import RubricLibrary
from rubric_grader.routes.grading_routes import NOT_SAVED_WARNING
from rubric_grader.services.persistence import PersistenceSelector, guest_session_key
from rubric_grader.services.registry import GradingServices

SECRET = "route-test-secret-with-enough-length-for-hs256"
RUBRIC = "rubric-discrete"


def build_services(storage, keyring, record_stores):
    selector = PersistenceSelector(
        RequestAuthProvider(), storage, keyring,
        results_store=record_stores["results"],
        sessions_store=record_stores["sessions"],
        self_assessment_store=record_stores["self_assessments"],
    )
    return GradingServices(selector, RubricLibrary(storage), keyring, autosave_interval=0)


@pytest.fixture
def services(storage, keyring, record_stores):
    services = build_services(storage, keyring, record_stores)
    yield services
    services.shutdown()


@pytest.fixture
def client(services, discrete_rubric, monkeypatch):
    monkeypatch.setenv("SUPABASE_JWT_SECRET", SECRET)
    app = create_app(services)
    app.config["TESTING"] = True
    client = app.test_client()
    resp = client.post("/api/rubrics", json=discrete_rubric.to_json_dict())
    assert resp.status_code == 201
    return client


def bearer(user_id, email="t@school.nl"):
    token = jwt.encode({"sub": user_id, "email": email, "aud": "authenticated",
                        "exp": int(time.time()) + 3600}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    return bearer("teacher-1")


def start(client, roster=("Anna", "Bram"), headers=None, **extra):
    body = {"roster": list(roster), "className": "3B"}
    body.update(extra)
    return client.post(f"/api/rubrics/{RUBRIC}/session", json=body, headers=headers)


def commit(client, column_id=None, name=None, headers=None, **answer):
    if column_id:
        answer["columnId"] = column_id
    return client.post(f"/api/rubrics/{RUBRIC}/session/commit",
                       json={"answer": answer, "studentName": name}, headers=headers)


class TestRubricRoutes:
    def test_status(self, client):
        assert client.get("/api/status").get_json() == {"status": "ok"}

    def test_list_and_export(self, client):
        assert client.get("/api/rubrics").get_json()["rubricIds"] == [RUBRIC]
        exported = json.loads(client.get(f"/api/rubrics/{RUBRIC}").data)
        assert exported["name"] == "Lab report"

    def test_unknown_rubric(self, client):
        assert client.get("/api/rubrics/nope").status_code == 404
        assert client.post("/api/rubrics/nope/session", json={}).status_code == 404

    def test_import_copy(self, client, discrete_rubric):
        resp = client.post("/api/rubrics?new_id=1", json=discrete_rubric.to_json_dict())
        assert resp.status_code == 201
        assert resp.get_json()["rubric"]["id"] != RUBRIC
        assert len(client.get("/api/rubrics").get_json()["rubricIds"]) == 2

    def test_delete_rubric(self, client):
        assert client.delete(f"/api/rubrics/{RUBRIC}").get_json() == {"status": "deleted"}
        assert client.get(f"/api/rubrics/{RUBRIC}").status_code == 404
        assert client.delete(f"/api/rubrics/{RUBRIC}").status_code == 404

    def test_duplicate_rubric(self, client):
        resp = client.post(f"/api/rubrics/{RUBRIC}/duplicate", json={"name": "Lab report 2"})
        assert resp.status_code == 201
        copy = resp.get_json()["rubric"]
        assert copy["id"] != RUBRIC
        assert copy["name"] == "Lab report 2"
        assert len(client.get("/api/rubrics").get_json()["rubricIds"]) == 2
        assert client.post("/api/rubrics/nope/duplicate").status_code == 404

    def test_import_invalid(self, client):
        assert client.post("/api/rubrics", json=[1, 2]).status_code == 400
        assert client.post("/api/rubrics", json={"id": "x"}).status_code == 400


class TestGradingRoutes:
    def test_start_session(self, client):
        data = start(client).get_json()
        assert data["resumed"] is False
        assert data["progress"]["phase"] == "naming_first_unit"
        assert data["availableNames"] == ["Anna", "Bram"]
        assert data["currentUnit"]["rows"][0]["id"] == "method"
        assert "warning" not in data

    def test_commit_and_navigate(self, client):
        start(client)
        data = commit(client, "good", "Anna").get_json()
        assert data["state"]["studentOrder"] == ["Anna"]
        assert data["availableNames"] == ["Bram"]

        data = commit(client, "poor", "Bram").get_json()
        assert data["currentStudent"] == "Anna"
        assert data["currentUnit"]["index"] == 1

        data = client.post(f"/api/rubrics/{RUBRIC}/session/back").get_json()
        assert data["moved"] is True
        assert data["currentStudent"] == "Bram"

    def test_invalid_commit(self, client):
        start(client)
        assert commit(client, None, "Anna").status_code == 400
        assert commit(client, "good", "").status_code == 400
        assert commit(client, None, "Anna", score="lots").status_code == 400

    def test_no_active_session(self, client):
        assert client.get(f"/api/rubrics/{RUBRIC}/session").status_code == 404
        assert commit(client, "good", "Anna").status_code == 404

    def test_not_made_and_finish_roster(self, client):
        start(client, roster=[])
        commit(client, "good", "Anna")
        data = client.post(f"/api/rubrics/{RUBRIC}/session/finish-roster").get_json()
        assert data["currentStudent"] == "Anna"

        data = client.post(f"/api/rubrics/{RUBRIC}/session/not-made").get_json()
        assert data["notMade"] is True
        assert data["currentUnit"]["index"] == 2

    def test_finish_stores_results(self, client, services, storage):
        start(client, roster=["Anna"])
        commit(client, "good", "Anna", calculationCorrect=True)
        commit(client, "poor")
        client.post(f"/api/rubrics/{RUBRIC}/session/not-made")

        data = client.post(f"/api/rubrics/{RUBRIC}/session/finish").get_json()
        assert [r["totalScore"] for r in data["results"]] == [7]
        assert data["results"][0]["className"] == "3B"

        results = client.get(f"/api/rubrics/{RUBRIC}/results").get_json()["results"]
        assert results[0]["studentName"] == "Anna"
        assert client.get(f"/api/rubrics/{RUBRIC}/session").status_code == 404
        assert storage.get(guest_session_key(RUBRIC)) is None

    def test_resume_after_restart(self, client, services, storage, keyring, record_stores, discrete_rubric):
        start(client)
        commit(client, "good", "Anna")
        services.autosaver_for(RUBRIC).last_future.result(timeout=5)

        restarted = build_services(storage, keyring, record_stores)
        try:
            app = create_app(restarted)
            data = app.test_client().post(f"/api/rubrics/{RUBRIC}/session", json={}).get_json()
            assert data["resumed"] is True
            assert data["state"]["studentOrder"] == ["Anna"]
            assert data["availableNames"] == ["Bram"]
        finally:
            restarted.shutdown()

    def test_restart_without_resume(self, client):
        start(client)
        commit(client, "good", "Anna")
        data = start(client, resume=False).get_json()
        assert data["resumed"] is False
        assert data["state"]["studentOrder"] == []

    def test_abandon(self, client):
        start(client)
        assert client.delete(f"/api/rubrics/{RUBRIC}/session").get_json() == {"status": "cleared"}
        assert client.get(f"/api/rubrics/{RUBRIC}/session").status_code == 404

    def test_active_session(self, client, services):
        assert client.get("/api/sessions/active").get_json() == {"session": None}
        start(client)
        commit(client, "good", "Anna")
        services.autosaver_for(RUBRIC).last_future.result(timeout=5)
        assert client.get("/api/sessions/active").get_json()["session"]["rubricId"] == RUBRIC

    def test_score_preview(self, client):
        data = client.post(f"/api/rubrics/{RUBRIC}/score",
                           json={"selections": {"method": "good"}}).get_json()
        assert data["totalScore"] == 7
        assert data["percentage"] == 32
        assert data["status"] == "development"


class TestResultsRoutes:
    def test_save_result(self, client):
        resp = client.post(f"/api/rubrics/{RUBRIC}/results",
                           json={"studentName": "Jan", "totalScore": 4})
        assert resp.status_code == 200
        assert resp.get_json()["result"]["id"]

        client.post(f"/api/rubrics/{RUBRIC}/results", json={"studentName": "jan ", "totalScore": 6})
        results = client.get(f"/api/rubrics/{RUBRIC}/results").get_json()["results"]
        assert len(results) == 1
        assert results[0]["totalScore"] == 6

    def test_invalid_result(self, client):
        assert client.post(f"/api/rubrics/{RUBRIC}/results", json={"studentName": " "}).status_code == 400
        assert client.post(f"/api/rubrics/{RUBRIC}/results", json={}).status_code == 400

    def test_privacy_key(self, client):
        assert client.get("/api/privacy-key").get_json() == {"isSet": False}
        assert client.post("/api/privacy-key", json={"key": ""}).status_code == 400
        assert client.post("/api/privacy-key", json={"key": "secret"}).get_json() == {"isSet": True}
        assert client.get("/api/privacy-key").get_json() == {"isSet": True}
        assert client.delete("/api/privacy-key").get_json() == {"isSet": False}


class TestSignedIn:
    def test_bad_tokens(self, client):
        assert client.get("/api/rubrics", headers={"Authorization": "Token abc"}).status_code == 401
        assert client.get("/api/rubrics", headers={"Authorization": "Bearer abc"}).status_code == 401
        assert client.get("/api/status", headers={"Authorization": "Bearer abc"}).status_code == 200

    def test_without_privacy_key(self, client, auth_headers, record_stores):
        data = start(client, headers=auth_headers).get_json()
        assert data["warning"] == NOT_SAVED_WARNING

        resp = client.post(f"/api/rubrics/{RUBRIC}/results", headers=auth_headers,
                           json={"studentName": "Jan", "totalScore": 4})
        assert resp.status_code == 409
        assert record_stores["results"].rows == []

        results = client.get(f"/api/rubrics/{RUBRIC}/results", headers=auth_headers).get_json()
        assert results["warning"]

    def test_encrypted_grading(self, client, services, auth_headers, record_stores):
        client.post("/api/privacy-key", json={"key": "teacher secret"}, headers=auth_headers)
        data = start(client, roster=["Anna"], headers=auth_headers).get_json()
        assert "warning" not in data

        commit(client, "good", "Anna", headers=auth_headers)
        _, autosaver = services._active[("teacher-1", RUBRIC)]
        assert autosaver.last_future.result(timeout=5) is True
        assert record_stores["sessions"].rows[0]["user_id"] == "teacher-1"

        commit(client, "good", headers=auth_headers)
        commit(client, "good", headers=auth_headers)
        data = client.post(f"/api/rubrics/{RUBRIC}/session/finish", headers=auth_headers).get_json()
        assert data["results"][0]["totalScore"] == 17

        row = record_stores["results"].rows[0]
        assert "Anna" not in row["student_name"]
        assert record_stores["sessions"].rows == []

    def test_guest_and_user_sessions_are_separate(self, client, auth_headers):
        client.post("/api/privacy-key", json={"key": "k"}, headers=auth_headers)
        start(client, headers=auth_headers)
        assert client.get(f"/api/rubrics/{RUBRIC}/session").status_code == 404
        assert client.get(f"/api/rubrics/{RUBRIC}/session", headers=auth_headers).status_code == 200

    def test_privacy_key_belongs_to_one_user(self, client, auth_headers, record_stores):
        other = bearer("teacher-2", "other@school.nl")
        client.post("/api/privacy-key", json={"key": "teacher secret"}, headers=auth_headers)

        assert client.get("/api/privacy-key", headers=auth_headers).get_json() == {"isSet": True}
        assert client.get("/api/privacy-key", headers=other).get_json() == {"isSet": False}
        assert client.get("/api/privacy-key").get_json() == {"isSet": False}

        resp = client.post(f"/api/rubrics/{RUBRIC}/results", headers=other,
                           json={"studentName": "Jan", "totalScore": 4})
        assert resp.status_code == 409
        assert record_stores["results"].rows == []

        client.delete("/api/privacy-key", headers=other)
        assert client.get("/api/privacy-key", headers=auth_headers).get_json() == {"isSet": True}
