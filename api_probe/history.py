"""History Store - Bounded, persisted log of past runs.

The history file is a JSON document ({"entries": [...]}, most recent first)
kept next to config.yaml. It holds at most MAX_HISTORY_ENTRIES entries;
appending beyond that evicts the oldest.
"""

from __future__ import annotations

import logging
import os
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from pydantic import ValidationError

from api_probe.config_loader import default_config_dir
from api_probe.models import HistoryEntry, HistoryFile, Operation, Options, RunResult

logger = logging.getLogger(__name__)

MAX_HISTORY_ENTRIES = 50
HISTORY_FILE_NAME = "history.json"


class HistoryError(Exception):
    """Raised when history cannot be persisted or an entry is missing."""


def generate_entry_id(now: datetime | None = None) -> str:
    """Entry id in the form YYYYmmdd_HHMMSS_<6 hex chars>."""
    moment = now or datetime.now(timezone.utc)
    return f"{moment.strftime('%Y%m%d_%H%M%S')}_{secrets.token_hex(3)}"


def create_entry(
    result: RunResult,
    operations: Sequence[Operation],
    options: Options,
    include_results: bool = True,
) -> HistoryEntry:
    """Build a history entry for a completed run.

    Args:
        result: The run to record.
        operations: Operations the run executed (kept for replay).
        options: Options the run used (kept for replay).
        include_results: Keep the full RunResult, not just stats.
    """
    now = datetime.now(timezone.utc)
    return HistoryEntry(
        id=generate_entry_id(now),
        timestamp=now.isoformat(),
        spec_path=result.spec_path,
        base_url=result.base_url,
        stats=result.stats.model_copy(),
        operations=list(operations),
        options=options,
        result=result if include_results else None,
    )


def format_duration(ms: float) -> str:
    """Compact duration for listings: 850ms, 2.4s, 3m12s."""
    if ms < 1000:
        return f"{ms:.0f}ms"
    seconds = ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    return f"{int(seconds // 60)}m{int(seconds % 60)}s"


class HistoryStore:
    """Reads and writes the history file.

    Every mutating call loads the file, applies the change and writes it back
    atomically, so a store object holds no state between calls.
    """

    def __init__(self, path: Path | None = None) -> None:
        """Initialize the store.

        Args:
            path: History file location. Defaults to history.json in the
                config directory (API_PROBE_CONFIG_DIR or ~/.config/api-probe).
        """
        self._path = path or default_config_dir() / HISTORY_FILE_NAME

    @property
    def path(self) -> Path:
        return self._path

    def append(self, entry: HistoryEntry) -> None:
        """Insert an entry as the most recent, evicting the oldest beyond the cap."""
        history = self._load()
        history.entries.insert(0, entry)
        del history.entries[MAX_HISTORY_ENTRIES:]
        self._save(history)
        logger.debug("Recorded run %s in %s", entry.id, self._path)

    def list(self, limit: int | None = None) -> list[HistoryEntry]:
        """Entries, most recent first."""
        entries = self._load().entries
        if limit is not None:
            return entries[:limit]
        return entries

    def get(self, entry_id: str) -> HistoryEntry | None:
        for entry in self._load().entries:
            if entry.id == entry_id:
                return entry
        return None

    def replay(self, entry_id: str) -> tuple[list[Operation], Options]:
        """Operations and options needed to re-run a recorded entry.

        Raises:
            HistoryError: If the entry does not exist or carries no snapshot.
        """
        entry = self.get(entry_id)
        if entry is None:
            raise HistoryError(f"No history entry with id '{entry_id}'")
        if entry.options is None or not entry.operations:
            raise HistoryError(f"History entry '{entry_id}' has nothing to replay")
        return list(entry.operations), entry.options

    def clear(self) -> None:
        self._save(HistoryFile())

    def _load(self) -> HistoryFile:
        """Read the history file. Missing or corrupt files yield empty history."""
        if not self._path.exists():
            return HistoryFile()
        try:
            content = self._path.read_text(encoding="utf-8")
            return HistoryFile.model_validate_json(content)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable history file %s: %s", self._path, e)
            return HistoryFile()

    def _save(self, history: HistoryFile) -> None:
        """Write the history file atomically.

        Entries may hold credentials in their options snapshot, so the file
        is created readable by the owner only.
        """
        temp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(history.model_dump_json(indent=2))
                f.write("\n")
            temp_path.replace(self._path)
        except OSError as e:
            raise HistoryError(f"Failed to write history file {self._path}: {e}") from e
