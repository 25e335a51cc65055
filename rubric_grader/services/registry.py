"""
Grading Services Registry
=========================
Explicitly constructed service objects for the API layer: the rubric
library, the results store, session persistence, and one live
GradingSession (with its autosaver) per user and rubric.
"""
import logging
import threading
from typing import Dict, List, Optional, Tuple

from rubric_grader.auth import RequestAuthProvider
from rubric_grader.config import config
from rubric_grader.exceptions import SessionStateError
from rubric_grader.models import GradedStudent
from rubric_grader.rubric_io import RubricLibrary
from rubric_grader.services.grading_session import GradingSession
from rubric_grader.services.persistence import PersistenceSelector
from rubric_grader.services.privacy_cipher import PrivacyKeyring
from rubric_grader.services.results_store import ResultsStore
from rubric_grader.services.session_persistence import SessionAutosaver, SessionPersistence
from rubric_grader.storage import JsonFileStorage

logger = logging.getLogger(__name__)

GUEST_OWNER = "guest"


class GradingServices:
    """Everything the routes need, wired once per application."""

    def __init__(self, selector: PersistenceSelector, library: RubricLibrary,
                 keyring: PrivacyKeyring, autosave_interval: Optional[float] = None):
        self.selector = selector
        self.library = library
        self.keyring = keyring
        self.results = ResultsStore(selector)
        self.sessions = SessionPersistence(selector)
        self.autosave_interval = config.autosave_interval if autosave_interval is None \
            else autosave_interval
        self._active: Dict[Tuple[str, str], Tuple[GradingSession, SessionAutosaver]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls):
        storage = JsonFileStorage(config.data_dir)
        keyring = PrivacyKeyring(storage)
        auth = RequestAuthProvider()
        if config.remote_enabled:
            selector = PersistenceSelector.from_config(auth, storage, keyring)
        else:
            logger.info("Supabase not configured, all users are served in guest mode")
            selector = PersistenceSelector(auth, storage, keyring)
        return cls(selector, RubricLibrary(storage), keyring)

    def _owner(self):
        user = self.selector.auth.get_current_user()
        return user, (user.id if user else GUEST_OWNER)

    def active_session(self, rubric_id: str) -> Optional[GradingSession]:
        _, owner = self._owner()
        with self._lock:
            entry = self._active.get((owner, rubric_id))
        return entry[0] if entry else None

    def start_session(self, rubric_id: str, roster: Optional[List[str]] = None,
                      class_name: str = "", resume: bool = True) -> Tuple[GradingSession, bool]:
        """
        Open a grading session for the current user.

        Returns:
            (session, resumed) - resumed is True when saved progress was restored
        """
        rubric = self.library.get(rubric_id)
        user, owner = self._owner()

        with self._lock:
            entry = self._active.get((owner, rubric_id))
        if entry is not None:
            if resume:
                return entry[0], True
            self._stop(owner, rubric_id)

        session = None
        if resume:
            state = self.sessions.fetch(rubric_id)
            if state is not None:
                try:
                    session = GradingSession.from_state(rubric, state)
                except SessionStateError as e:
                    logger.warning("Discarding saved session: %s", e)
        else:
            self.sessions.clear(rubric_id)

        resumed = session is not None
        if session is None:
            session = GradingSession(rubric, roster=roster, class_name=class_name)

        autosaver = SessionAutosaver(
            SessionPersistence(self.selector.for_user(user)),
            session,
            interval=self.autosave_interval,
        )
        if self.autosave_interval > 0:
            autosaver.start()

        with self._lock:
            self._active[(owner, rubric_id)] = (session, autosaver)
        logger.info("Grading session %s for rubric %s (%s)",
                    "resumed" if resumed else "started", rubric_id,
                    "guest" if user is None else "signed in")
        return session, resumed

    def autosaver_for(self, rubric_id: str) -> Optional[SessionAutosaver]:
        _, owner = self._owner()
        with self._lock:
            entry = self._active.get((owner, rubric_id))
        return entry[1] if entry else None

    def _stop(self, owner: str, rubric_id: str, wait: bool = True):
        with self._lock:
            entry = self._active.pop((owner, rubric_id), None)
        if entry is not None:
            entry[1].stop(wait=wait)

    def finish_session(self, rubric_id: str, class_name: Optional[str] = None) -> List[GradedStudent]:
        """Score every student, store the results, and drop the saved session."""
        session = self.active_session(rubric_id)
        if session is None:
            return []

        graded = session.finish(class_name)
        saved = self.results.save_many(rubric_id, graded)

        if len(saved) < len(graded):
            logger.warning("Only %d of %d results stored for rubric %s, keeping the session",
                           len(saved), len(graded), rubric_id)
            return saved

        _, owner = self._owner()
        self._stop(owner, rubric_id)
        self.sessions.clear(rubric_id)
        logger.info("Finished grading rubric %s: %d of %d results stored",
                    rubric_id, len(saved), len(graded))
        return saved

    def abandon_session(self, rubric_id: str):
        _, owner = self._owner()
        self._stop(owner, rubric_id)
        self.sessions.clear(rubric_id)

    def shutdown(self):
        with self._lock:
            keys = list(self._active.keys())
        for owner, rubric_id in keys:
            self._stop(owner, rubric_id, wait=True)
