"""
Persistence Strategies
======================
Guest users keep everything in local device storage, in plaintext.
Signed-in users keep everything in the remote record store, with student
names and payloads encrypted by the client-held privacy key.

Both strategies implement the same contract; PersistenceSelector picks one
per operation from the current auth status.
"""
import json
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import ValidationError

from rubric_grader.config import config
from rubric_grader.exceptions import PrivacyKeyMissingError
from rubric_grader.models import GradedStudent, GradingSessionState
from rubric_grader.services import privacy_cipher

logger = logging.getLogger(__name__)

GUEST_RESULTS_PREFIX = "guest_results_"
GUEST_SESSION_PREFIX = "rubric-grading-session-"


def guest_results_key(rubric_id: str) -> str:
    return f"{GUEST_RESULTS_PREFIX}{rubric_id}"


def guest_session_key(rubric_id: str) -> str:
    return f"{GUEST_SESSION_PREFIX}{rubric_id}"


class PersistenceStrategy:
    """Contract shared by the guest and the signed-in storage strategies."""

    mode = "base"
    scope = "base"  # whose data this strategy reads and writes

    @property
    def can_persist(self) -> bool:
        return True

    def load_results(self, rubric_id: str) -> List[GradedStudent]:
        raise NotImplementedError

    def write_result(self, rubric_id: str, student: GradedStudent,
                     existing_id: Optional[str] = None) -> GradedStudent:
        raise NotImplementedError

    def load_self_assessments(self, rubric_id: str) -> List[GradedStudent]:
        return []

    def load_session(self, rubric_id: str) -> Optional[GradingSessionState]:
        raise NotImplementedError

    def write_session(self, rubric_id: str, state: GradingSessionState) -> bool:
        raise NotImplementedError

    def delete_session(self, rubric_id: str):
        raise NotImplementedError

    def latest_session(self) -> Optional[Dict]:
        raise NotImplementedError


# ══════════════════════════════════════════════════════════════
# GUEST MODE - LOCAL STORAGE
# ══════════════════════════════════════════════════════════════

class LocalPersistence(PersistenceStrategy):
    mode = "guest"
    scope = "guest"

    def __init__(self, storage):
        self.storage = storage

    def load_results(self, rubric_id):
        raw = self.storage.get(guest_results_key(rubric_id))
        if not raw:
            return []
        try:
            entries = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable guest results for rubric %s", rubric_id)
            return []

        students = []
        for entry in entries if isinstance(entries, list) else []:
            try:
                students.append(GradedStudent.model_validate(entry))
            except ValidationError as e:
                logger.warning("Skipping malformed guest result for rubric %s: %s", rubric_id, e)
        return students

    def write_result(self, rubric_id, student, existing_id=None):
        saved = student.model_copy(update={"id": existing_id or student.id or uuid.uuid4().hex})
        students = self.load_results(rubric_id)

        for idx, existing in enumerate(students):
            if existing.id == saved.id:
                students[idx] = saved
                break
        else:
            students.append(saved)

        self.storage.set(
            guest_results_key(rubric_id),
            json.dumps([s.to_json_dict() for s in students]),
        )
        return saved

    def load_session(self, rubric_id):
        key = guest_session_key(rubric_id)
        raw = self.storage.get(key)
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
            # Older saves stored the state without the {"data": ...} envelope
            data = parsed.get("data", parsed) if isinstance(parsed, dict) else parsed
            return GradingSessionState.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning("Discarding malformed guest session for rubric %s: %s", rubric_id, e)
            self.storage.remove(key)
            return None

    def write_session(self, rubric_id, state):
        payload = json.dumps({
            "data": state.to_json_dict(),
            "updated_at": datetime.now().isoformat(),
        })
        self.storage.set(guest_session_key(rubric_id), payload)
        return True

    def delete_session(self, rubric_id):
        self.storage.remove(guest_session_key(rubric_id))

    def latest_session(self):
        most_recent = None
        for key in self.storage.keys():
            if not key.startswith(GUEST_SESSION_PREFIX):
                continue
            try:
                parsed = json.loads(self.storage.get(key) or "")
            except ValueError:
                logger.warning("Failed to parse active session key %s", key)
                continue
            updated_at = parsed.get("updated_at", "") if isinstance(parsed, dict) else ""
            if most_recent is None or updated_at > most_recent["updatedAt"]:
                most_recent = {
                    "rubricId": key[len(GUEST_SESSION_PREFIX):],
                    "updatedAt": updated_at,
                }
        return most_recent


# ══════════════════════════════════════════════════════════════
# SIGNED-IN MODE - ENCRYPTED REMOTE STORE
# ══════════════════════════════════════════════════════════════

class EncryptedRemotePersistence(PersistenceStrategy):
    mode = "remote"

    def __init__(self, user, privacy_key: Optional[str], results_store,
                 sessions_store, self_assessment_store=None):
        self.user = user
        self.privacy_key = privacy_key
        self.results_store = results_store
        self.sessions_store = sessions_store
        self.self_assessment_store = self_assessment_store

    @property
    def can_persist(self):
        return bool(self.privacy_key)

    @property
    def scope(self):
        return f"user:{self.user.id}"

    def _encrypt(self, text: str) -> str:
        if not self.privacy_key:
            raise PrivacyKeyMissingError("No privacy key set for encrypted storage")
        return privacy_cipher.encrypt(text, self.privacy_key)

    def _decrypt(self, ciphertext: str) -> Optional[str]:
        return privacy_cipher.decrypt(ciphertext, self.privacy_key)

    def load_results(self, rubric_id):
        if not self.can_persist:
            return []

        rows = self.results_store.select(rubric_id=rubric_id, user_id=self.user.id)
        logger.info("Fetched %d encrypted result rows for rubric %s", len(rows), rubric_id)

        students = []
        for row in rows:
            name = self._decrypt(row.get("student_name"))
            data = self._decrypt(row.get("data"))
            if not name or not data:
                logger.warning("Result row %s could not be decrypted, skipping", row.get("id"))
                continue
            try:
                payload = json.loads(data)
                payload.update({"id": row.get("id"), "studentName": name})
                students.append(GradedStudent.model_validate(payload))
            except (ValueError, AttributeError, ValidationError) as e:
                logger.warning("Result row %s is not a valid record: %s", row.get("id"), e)
        return students

    def write_result(self, rubric_id, student, existing_id=None):
        payload = {
            "id": existing_id,  # None lets the store create a new row
            "rubric_id": rubric_id,
            "user_id": self.user.id,
            "student_name": self._encrypt(student.student_name),
            "data": self._encrypt(json.dumps(student.to_json_dict())),
            "updated_at": datetime.now().isoformat(),
        }
        saved = self.results_store.upsert(payload)
        return student.model_copy(update={"id": saved.get("id")})

    def load_self_assessments(self, rubric_id):
        """Self-submitted records; students hold no privacy key so these are plaintext."""
        if self.self_assessment_store is None:
            return []

        students = []
        for row in self.self_assessment_store.select(rubric_id=rubric_id):
            data = row.get("data") or {}
            try:
                if isinstance(data, str):
                    data = json.loads(data)
                data.update({
                    "id": row.get("id"),
                    "studentName": row.get("student_name") or data.get("studentName", ""),
                    "is_self_assessment": True,
                })
                students.append(GradedStudent.model_validate(data))
            except (ValueError, AttributeError, ValidationError) as e:
                logger.warning("Skipping malformed self-assessment %s: %s", row.get("id"), e)
        return students

    def _existing_session_row(self, rubric_id):
        rows = self.sessions_store.select(rubric_id=rubric_id, user_id=self.user.id)
        return rows[0] if rows else None

    def load_session(self, rubric_id):
        if not self.can_persist:
            logger.warning("No privacy key, cannot load cloud session for rubric %s", rubric_id)
            return None

        row = self._existing_session_row(rubric_id)
        if row is None:
            return None

        decrypted = self._decrypt(row.get("data"))
        if not decrypted:
            logger.error("Failed to decrypt session for rubric %s", rubric_id)
            return None
        try:
            return GradingSessionState.deserialize(decrypted)
        except (ValueError, ValidationError) as e:
            logger.warning("Discarding malformed cloud session for rubric %s: %s", rubric_id, e)
            return None

    def write_session(self, rubric_id, state):
        if not self.can_persist:
            logger.warning("No privacy key, skipping cloud save for rubric %s", rubric_id)
            return False

        existing = self._existing_session_row(rubric_id)
        self.sessions_store.upsert({
            "id": existing.get("id") if existing else None,
            "rubric_id": rubric_id,
            "user_id": self.user.id,
            "data": self._encrypt(state.serialize()),
            "updated_at": datetime.now().isoformat(),
        })
        return True

    def delete_session(self, rubric_id):
        self.sessions_store.delete(rubric_id=rubric_id, user_id=self.user.id)

    def latest_session(self):
        rows = self.sessions_store.select(
            user_id=self.user.id, order_by="updated_at", desc=True, limit=1)
        if not rows:
            return None
        return {"rubricId": rows[0].get("rubric_id"), "updatedAt": rows[0].get("updated_at")}


# ══════════════════════════════════════════════════════════════
# STRATEGY SELECTION
# ══════════════════════════════════════════════════════════════

class PersistenceSelector:
    """Chooses the storage strategy for the user behind the current operation."""

    def __init__(self, auth, storage, keyring, results_store=None,
                 sessions_store=None, self_assessment_store=None):
        self.auth = auth
        self.keyring = keyring
        self.local = LocalPersistence(storage) if storage is not None else None
        self.results_store = results_store
        self.sessions_store = sessions_store
        self.self_assessment_store = self_assessment_store

    @classmethod
    def from_config(cls, auth, storage, keyring):
        from rubric_grader.storage import SupabaseRecordStore
        return cls(
            auth, storage, keyring,
            results_store=SupabaseRecordStore(config.results_table),
            sessions_store=SupabaseRecordStore(config.sessions_table),
            self_assessment_store=SupabaseRecordStore(config.self_assessments_table),
        )

    def for_user(self, user) -> "PersistenceSelector":
        """A selector pinned to one user, for work done outside a request (autosave)."""
        from rubric_grader.auth import StaticAuthProvider
        pinned = PersistenceSelector(
            StaticAuthProvider(user), None, self.keyring,
            self.results_store, self.sessions_store, self.self_assessment_store,
        )
        pinned.local = self.local
        return pinned

    def select(self) -> PersistenceStrategy:
        user = self.auth.get_current_user()
        if user is None or self.results_store is None:
            return self.local
        return EncryptedRemotePersistence(
            user,
            self.keyring.key_for(user.id),
            self.results_store,
            self.sessions_store,
            self.self_assessment_store,
        )
