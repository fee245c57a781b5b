"""
Session persistence for Feature Factory.

This module handles:
- Saving workflow state to .feature-factory/sessions/<session_id>.json
- Atomic writes to prevent corruption
- Graceful handling of missing or corrupted session files
- Listing, cleanup and lookup of resumable sessions
"""

from __future__ import annotations

import json
import secrets
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from feature_factory import __version__
from feature_factory.config import DEFAULT_STATE_DIR
from feature_factory.errors import SessionStoreError
from feature_factory.models import (
    PersistedSession,
    SessionMetadata,
    SessionSummary,
    WorkflowState,
    WorkflowStatus,
    model_to_json,
    utc_now,
)
from feature_factory.utils.fs import (
    FileSystemError,
    file_exists,
    list_files,
    read_file,
    remove_file,
    safe_write,
)

if TYPE_CHECKING:
    from feature_factory.logger import FactoryLogger


def generate_session_id(now: Optional[datetime] = None) -> str:
    """
    Generate a unique session ID.

    A UTC timestamp keeps ids roughly sortable for debugging; the random hex
    suffix makes collisions unlikely.
    """
    now = now or utc_now()
    return f"{now.strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4)}"


class SessionStore:
    """
    Persistent session storage rooted at a working directory.

    One JSON file per session, holding a metadata envelope and the
    WorkflowState snapshot.
    """

    def __init__(
        self,
        root: str | Path,
        state_dir: str = DEFAULT_STATE_DIR,
        logger: Optional[FactoryLogger] = None,
    ) -> None:
        """
        Initialize the session store.

        Args:
            root: Working directory the sessions belong to.
            state_dir: State directory name under the root.
            logger: Optional logger for recording operations.
        """
        self.root = Path(root)
        self._sessions_dir = self.root / state_dir / "sessions"
        self._logger = logger

    @property
    def sessions_dir(self) -> Path:
        """Directory holding the session files."""
        return self._sessions_dir

    def _get_session_path(self, session_id: str) -> Path:
        """Get path to a session file."""
        return self._sessions_dir / f"{session_id}.json"

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def save(self, state: WorkflowState, now: Optional[datetime] = None) -> PersistedSession:
        """
        Save a workflow state snapshot atomically.

        Creates the sessions directory if absent.

        Args:
            state: The WorkflowState to save.
            now: Timestamp recorded as ``last_updated_at``. Defaults to now.

        Returns:
            The persisted session envelope.

        Raises:
            SessionStoreError: If the state cannot be encoded or the write fails.
        """
        metadata = SessionMetadata(
            session_id=state.session_id,
            created_at=state.started_at,
            last_updated_at=now or utc_now(),
            working_directory=str(self.root),
            version=__version__,
        )
        session = PersistedSession(metadata=metadata, state=state)
        session_path = self._get_session_path(state.session_id)

        try:
            content = model_to_json(session.to_dict(), indent=2)
        except (TypeError, ValueError) as e:
            self._log("session_encode_error", {
                "session_id": state.session_id,
                "error": str(e),
            }, level="error")
            raise SessionStoreError(f"Session {state.session_id} is not serializable: {e}")

        try:
            safe_write(session_path, content)
        except FileSystemError as e:
            self._log("session_save_error", {
                "session_id": state.session_id,
                "error": str(e),
            }, level="error")
            raise SessionStoreError(f"Failed to save session {state.session_id}: {e}")

        self._log("session_saved", {
            "session_id": state.session_id,
            "status": state.status.value,
            "phase": state.current_phase_index,
        }, level="debug")
        return session

    def load(self, session_id: str) -> Optional[PersistedSession]:
        """
        Load a session from disk.

        Args:
            session_id: The session identifier.

        Returns:
            PersistedSession if the file exists and is valid, None otherwise.
        """
        session_path = self._get_session_path(session_id)

        if not file_exists(session_path):
            self._log("session_load_miss", {"session_id": session_id}, level="debug")
            return None

        try:
            data = json.loads(read_file(session_path))
            return PersistedSession.from_dict(data)

        except json.JSONDecodeError as e:
            self._log("session_corrupted", {
                "session_id": session_id,
                "error": str(e),
                "path": str(session_path),
            }, level="error")
            return None

        except (KeyError, ValueError, TypeError) as e:
            self._log("session_invalid", {
                "session_id": session_id,
                "error": str(e),
                "path": str(session_path),
            }, level="error")
            return None

        except FileSystemError as e:
            self._log("session_read_error", {
                "session_id": session_id,
                "error": str(e),
            }, level="error")
            return None

    def list_sessions(self) -> list[SessionSummary]:
        """
        List all readable sessions, most recently updated first.

        Unreadable files are skipped.
        """
        summaries = []
        for path in list_files(self._sessions_dir, "*.json"):
            session = self.load(path.stem)
            if session is not None:
                summaries.append(SessionSummary.from_session(session))

        summaries.sort(key=lambda s: s.last_updated_at, reverse=True)
        return summaries

    def delete(self, session_id: str) -> bool:
        """
        Delete a session file.

        Returns:
            True if the session was deleted, False if it didn't exist.

        Raises:
            SessionStoreError: If the file exists but cannot be removed.
        """
        try:
            removed = remove_file(self._get_session_path(session_id))
        except FileSystemError as e:
            self._log("session_delete_error", {
                "session_id": session_id,
                "error": str(e),
            }, level="error")
            raise SessionStoreError(f"Failed to delete session {session_id}: {e}")

        if removed:
            self._log("session_deleted", {"session_id": session_id})
        return removed

    def cleanup(
        self,
        older_than_days: int = 7,
        include_completed: bool = True,
        include_failed: bool = False,
        include_cancelled: bool = False,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """
        Delete old sessions in the selected terminal statuses.

        Sessions that are still running or awaiting approval are never
        deleted here.

        Args:
            older_than_days: Only sessions last updated before this many days ago.
            include_completed: Delete completed sessions.
            include_failed: Delete failed sessions.
            include_cancelled: Delete cancelled sessions.
            now: Reference time. Defaults to now.

        Returns:
            Ids of the deleted sessions.
        """
        cutoff = (now or utc_now()) - timedelta(days=older_than_days)
        selected = set()
        if include_completed:
            selected.add(WorkflowStatus.COMPLETED)
        if include_failed:
            selected.add(WorkflowStatus.FAILED)
        if include_cancelled:
            selected.add(WorkflowStatus.CANCELLED)

        deleted = []
        for summary in self.list_sessions():
            if summary.status not in selected:
                continue
            if summary.last_updated_at >= cutoff:
                continue
            if self.delete(summary.session_id):
                deleted.append(summary.session_id)

        if deleted:
            self._log("sessions_cleaned", {"count": len(deleted), "session_ids": deleted})
        return deleted

    def get_resumable(self) -> Optional[PersistedSession]:
        """Most recently updated session that is running or awaiting approval."""
        for summary in self.list_sessions():
            if summary.status.is_resumable:
                return self.load(summary.session_id)
        return None
