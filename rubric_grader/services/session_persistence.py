"""
Grading Session Persistence
===========================
Save and resume in-progress grading sessions.

Guest sessions are written to local device storage. Signed-in sessions are
encrypted with the privacy key and written to the remote store; without a
key the save is skipped and the caller warns that progress is not saved.

SessionAutosaver runs the periodic save as an explicit scheduled task. At
every tick it reads the session it is attached to right now (not a copy
taken when the timer started) and only saves when the session is dirty.
Every committed unit also forces an immediate save.
"""
import concurrent.futures
import logging
import threading
from typing import Optional

from rubric_grader.config import config
from rubric_grader.exceptions import PrivacyKeyMissingError, RecordStoreError
from rubric_grader.models import GradingSessionState

logger = logging.getLogger(__name__)


class SessionPersistence:
    """Save, fetch and clear grading session snapshots per rubric."""

    def __init__(self, selector):
        self.selector = selector

    def can_persist(self) -> bool:
        return self.selector.select().can_persist

    def save(self, rubric_id: str, state: GradingSessionState) -> bool:
        """
        Persist a session snapshot.

        Returns:
            True when the snapshot was written, False when it was skipped
            (nothing to save, no privacy key) or the store failed.
        """
        if not state.has_progress:
            logger.debug("Skipping save: no student data to persist for rubric %s", rubric_id)
            return False

        strategy = self.selector.select()
        try:
            saved = strategy.write_session(rubric_id, state)
        except (RecordStoreError, PrivacyKeyMissingError) as e:
            logger.error("Session save failed for rubric %s: %s", rubric_id, e)
            return False

        if saved:
            logger.debug("Saved %s session for rubric %s", strategy.mode, rubric_id)
        return saved

    def fetch(self, rubric_id: str) -> Optional[GradingSessionState]:
        strategy = self.selector.select()
        try:
            state = strategy.load_session(rubric_id)
        except RecordStoreError as e:
            logger.error("Fetch session error for rubric %s: %s", rubric_id, e)
            return None

        if state is not None and state.rubric_id != rubric_id:
            logger.warning("Stored session for %s belongs to rubric %s, ignoring",
                           rubric_id, state.rubric_id)
            return None
        return state

    def clear(self, rubric_id: str):
        """Forget the session locally and, when signed in, remotely."""
        self.selector.local.delete_session(rubric_id)
        strategy = self.selector.select()
        if strategy is self.selector.local:
            return
        try:
            strategy.delete_session(rubric_id)
        except RecordStoreError as e:
            logger.error("Clear session error for rubric %s: %s", rubric_id, e)

    def latest_active(self) -> Optional[dict]:
        """The most recently updated resumable session, as {rubricId, updatedAt}."""
        try:
            return self.selector.select().latest_session()
        except RecordStoreError as e:
            logger.error("checkActiveSession error: %s", e)
            return None


class SessionAutosaver:
    """
    Periodic and milestone saves for one live grading session.

    Saves run on a single background worker so grading never waits for
    storage, and snapshots are written in the order they were taken.
    """

    def __init__(self, persistence: SessionPersistence, session=None,
                 interval: Optional[float] = None, executor=None):
        self.persistence = persistence
        self.interval = config.autosave_interval if interval is None else interval
        self.session = None
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="session-autosave")
        self._stop = threading.Event()
        self._thread = None
        self.last_future = None
        if session is not None:
            self.attach(session)

    def attach(self, session):
        """Point the autosaver at a (new) live session."""
        self.session = session
        session.add_commit_listener(self.on_unit_committed)

    def start(self):
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="session-autosave-timer")
        self._thread.start()

    def stop(self, wait: bool = False):
        """Cancel the timer. Saves already submitted still complete."""
        self._stop.set()
        self.session = None
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None
        self._executor.shutdown(wait=wait)

    def _run(self):
        while not self._stop.wait(self.interval):
            self.tick()

    def tick(self):
        """Timer check: save only when the session changed since the last save."""
        session = self.session
        if session is None or not session.dirty:
            return None
        return self.save_now()

    def on_unit_committed(self, session):
        if session is not self.session:
            return
        self.save_now()

    def save_now(self):
        """Snapshot the live session now and write it in the background."""
        session = self.session
        if session is None:
            return None
        state = session.snapshot_and_clean()
        self.last_future = self._executor.submit(self._write, state, session)
        return self.last_future

    def _write(self, state: GradingSessionState, session) -> bool:
        saved = self.persistence.save(state.rubric_id, state)
        if not saved and state.has_progress:
            # Keep the session dirty so the next tick retries
            session.dirty = True
        return saved
