"""Window log files.

Each window is a file named after its window key inside one directory:

- `<key>.tmp` while the window is open (appended to by the writer only);
- `<key>` once sealed (never modified again, safe to read concurrently).

Lines are JSON-encoded `Event` objects.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path
from typing import TextIO

from pydantic import ValidationError

from .models import Event

logger = logging.getLogger(__name__)

TMP_SUFFIX = ".tmp"


class WindowNotSealedError(LookupError):
    """Raised when a window is queried before it has been sealed."""

    def __init__(self, key: int) -> None:
        super().__init__(f"window {key} has no sealed log")
        self.key = key


class EventLogFileHandler:
    """Reads and writes window log files under a single directory."""

    def __init__(self, directory: str | Path) -> None:
        """Create a handler rooted at `directory` (created if missing)."""
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def tmp_path(self, key: int) -> Path:
        return self._dir / f"{key}{TMP_SUFFIX}"

    def sealed_path(self, key: int) -> Path:
        return self._dir / str(key)

    def write_tmp_file(self, events: Sequence[Event], key: int) -> None:
        """Append events to the open log of window `key`.

        Raises `OSError` on failure; the caller decides whether the batch is lost.
        """
        if not events:
            return
        payload = "".join(event.model_dump_json() + "\n" for event in events)
        with self.tmp_path(key).open("a", encoding="utf-8") as fh:
            fh.write(payload)
            fh.flush()

    def rename_from_tmp(self, key: int) -> bool:
        """Seal window `key`.

        Returns False when there is no open log for the key (nothing was written
        to that window). Refuses to replace an existing sealed log.
        """
        src = self.tmp_path(key)
        if not src.exists():
            return False
        dst = self.sealed_path(key)
        if dst.exists():
            raise FileExistsError(f"sealed log for window {key} already exists")
        os.rename(src, dst)
        return True

    def is_sealed(self, key: int) -> bool:
        return self.sealed_path(key).is_file()

    def is_open(self, key: int) -> bool:
        return self.tmp_path(key).is_file()

    def sealed_window_keys(self) -> list[int]:
        """Keys of all sealed windows, oldest first."""
        return sorted(k for k, sealed in self._scan() if sealed)

    def open_window_keys(self) -> list[int]:
        """Keys of all windows with an open log, oldest first."""
        return sorted(k for k, sealed in self._scan() if not sealed)

    def read_window(self, key: int) -> Iterator[Event | None]:
        """Yield the events of a sealed window.

        Lines that cannot be parsed yield `None` so the caller can count them.
        Raises `WindowNotSealedError` if the window has no sealed log.
        """
        try:
            fh = self.sealed_path(key).open("r", encoding="utf-8")
        except FileNotFoundError:
            raise WindowNotSealedError(key) from None
        return self._iter_events(key, fh)

    def _iter_events(self, key: int, fh: TextIO) -> Iterator[Event | None]:
        with fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield Event.model_validate_json(line)
                except ValidationError:
                    logger.debug("Unparseable line in window %s: %r", key, line[:200])
                    yield None

    def delete_files(self, keys: Iterable[int]) -> tuple[list[int], list[int]]:
        """Delete the logs (sealed and open) of the given windows.

        Returns `(deleted, failed)` key lists. Missing files are not failures.
        """
        deleted: list[int] = []
        failed: list[int] = []
        for key in keys:
            removed_any = False
            try:
                for path in (self.sealed_path(key), self.tmp_path(key)):
                    try:
                        path.unlink()
                        removed_any = True
                    except FileNotFoundError:
                        continue
            except OSError:
                logger.error("Failed to delete log for window %s", key, exc_info=True)
                failed.append(key)
                continue
            if removed_any:
                deleted.append(key)
        return deleted, failed

    def delete_all_files(self) -> int:
        """Delete every window log in the directory. Returns the number removed."""
        removed = 0
        for key, sealed in list(self._scan()):
            path = self.sealed_path(key) if sealed else self.tmp_path(key)
            path.unlink(missing_ok=True)
            removed += 1
        return removed

    def _scan(self) -> Iterator[tuple[int, bool]]:
        """Yield `(key, sealed)` for every window log file in the directory."""
        for entry in self._dir.iterdir():
            if not entry.is_file():
                continue
            name = entry.name
            sealed = not name.endswith(TMP_SUFFIX)
            stem = name if sealed else name[: -len(TMP_SUFFIX)]
            if not stem.isdigit():
                continue
            yield int(stem), sealed
