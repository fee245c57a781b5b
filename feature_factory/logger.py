"""
Session activity log for Feature Factory.

Orchestrator, session store and checkpoint operations append one JSON line
each to ``<state_dir>/logs/<stream>-YYYY-MM-DD.jsonl``. Entries are keyed on
the session and phase they concern, so the history of one session can be
replayed across days (``feature-factory sessions show <id> --log``).

Debug entries are only written when the configuration is verbose.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from feature_factory.config import FactoryConfig

ORCHESTRATOR_STREAM = "orchestrator"
CLI_STREAM = "cli"


class LogLevel:
    """Log level constants, lowest first."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    ORDER = (DEBUG, INFO, WARN, ERROR)

    @classmethod
    def rank(cls, level: str) -> int:
        """Position of a level; unknown levels rank as info."""
        try:
            return cls.ORDER.index(level)
        except ValueError:
            return cls.ORDER.index(cls.INFO)


@dataclass
class LogEntry:
    """One line of a log file."""
    timestamp: datetime
    level: str
    event_type: str
    stream: str
    session_id: Optional[str] = None
    phase_index: Optional[int] = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the on-disk form; unset keys are omitted."""
        entry: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "level": self.level,
            "event_type": self.event_type,
            "stream": self.stream,
        }
        if self.session_id is not None:
            entry["session_id"] = self.session_id
        if self.phase_index is not None:
            entry["phase_index"] = self.phase_index
        entry["data"] = self.data
        return entry

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        timestamp = data["timestamp"]
        if timestamp.endswith("Z"):
            timestamp = timestamp[:-1] + "+00:00"
        return cls(
            timestamp=datetime.fromisoformat(timestamp),
            level=data.get("level", LogLevel.INFO),
            event_type=data["event_type"],
            stream=data.get("stream", ""),
            session_id=data.get("session_id"),
            phase_index=data.get("phase_index"),
            data=data.get("data") or {},
        )


class FactoryLogger:
    """
    Appends LogEntry lines for one stream and reads them back.

    ``session_id`` and ``phase_index`` are taken from the keyword arguments
    of ``log`` or, when absent, from the same keys in ``data``; components
    that already put them in their payload get keyed entries for free.
    """

    def __init__(self, stream: str, config: FactoryConfig) -> None:
        """
        Args:
            stream: Stream name used in the log file names.
            config: Supplies the logs directory and the verbose flag.
        """
        self.stream = stream
        self.config = config

    @property
    def logs_dir(self) -> Path:
        return self.config.logs_path

    def _path_for(self, date: str) -> Path:
        return self.logs_dir / f"{self.stream}-{date}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
        session_id: Optional[str] = None,
        phase_index: Optional[int] = None,
    ) -> Optional[LogEntry]:
        """
        Append an entry.

        Returns:
            The written entry, or None when a debug entry was dropped.
        """
        if level == LogLevel.DEBUG and not self.config.verbose:
            return None

        data = dict(data or {})
        if session_id is None and isinstance(data.get("session_id"), str):
            session_id = data["session_id"]
        if phase_index is None and isinstance(data.get("phase_index"), int):
            phase_index = data["phase_index"]

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc),
            level=level,
            event_type=event_type,
            stream=self.stream,
            session_id=session_id,
            phase_index=phase_index,
            data=data,
        )
        path = self._path_for(entry.timestamp.strftime("%Y-%m-%d"))
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(json.dumps(entry.to_dict(), default=str) + "\n")
        return entry

    def log_files(self) -> list[Path]:
        """This stream's log files, oldest day first."""
        if not self.logs_dir.is_dir():
            return []
        return sorted(self.logs_dir.glob(f"{self.stream}-*.jsonl"))

    def entries(
        self,
        session_id: Optional[str] = None,
        phase_index: Optional[int] = None,
        event_types: Optional[Iterable[str]] = None,
        min_level: Optional[str] = None,
        date: Optional[str] = None,
    ) -> list[LogEntry]:
        """
        Read entries in write order, across every day unless ``date`` is given.

        Args:
            session_id: Only entries of this session.
            phase_index: Only entries of this phase.
            event_types: Only these event types.
            min_level: Only entries at or above this level.
            date: Only the file of this day (YYYY-MM-DD).

        Lines that are not valid entries are skipped.
        """
        paths = [self._path_for(date)] if date else self.log_files()
        wanted_types = set(event_types) if event_types is not None else None
        floor = LogLevel.rank(min_level) if min_level else 0

        matched = []
        for path in paths:
            if not path.exists():
                continue
            with open(path, "r") as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        entry = LogEntry.from_dict(json.loads(line))
                    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                        continue

                    if session_id is not None and entry.session_id != session_id:
                        continue
                    if phase_index is not None and entry.phase_index != phase_index:
                        continue
                    if wanted_types is not None and entry.event_type not in wanted_types:
                        continue
                    if LogLevel.rank(entry.level) < floor:
                        continue
                    matched.append(entry)
        return matched
