"""
State store — the single shared, mutable record of what exists.

State is stored as JSON in .converge/state.json. Writes are atomic (write
to temp file, then rename) so a crash mid-write never corrupts it.

During apply several workers write concurrently, one instance address
each. The store serialises every mutation behind one lock and hands out
per-address claims; a second claim on an address that is already being
written means the scheduler built a bad graph, and is rejected.

Revisions: every committed write bumps the document ``serial`` and stamps
the touched record with it, so a record's revision only ever grows even
across delete and re-create.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from converge.core.errors import ConcurrentStateConflictError, StaleStateReadError, StateFileError
from converge.core.models.state import SCHEMA_VERSION, StateDocument, StateRecord, _now_iso

logger = logging.getLogger(__name__)

# Default state file path (relative to the working directory)
DEFAULT_STATE_DIR = ".converge"
DEFAULT_STATE_FILE = "state.json"


def default_state_path(root: Path) -> Path:
    """Get the default state file path for a working directory."""
    return root / DEFAULT_STATE_DIR / DEFAULT_STATE_FILE


# ── Load / migrate / save ───────────────────────────────────────────


def migrate(data: dict[str, Any]) -> dict[str, Any]:
    """Bring a raw state document forward to the current schema.

    Raises:
        StateFileError: If the document was written by a newer version.
    """
    version = data.get("schema_version", 1)
    if not isinstance(version, int) or version > SCHEMA_VERSION:
        raise StateFileError(
            f"State schema_version {version!r} is newer than supported ({SCHEMA_VERSION})"
        )

    if version < 2:
        # v1 kept records under "resources" without revisions
        data = dict(data)
        resources = data.pop("resources", {}) or {}
        data["records"] = {
            address: {"address": address, **record} for address, record in resources.items()
        }
        data["schema_version"] = 2
        logger.info("Migrated state document from schema 1 to 2 (%d records)", len(resources))

    return data


def load_state(path: Path) -> StateDocument:
    """Load the state document from a JSON file.

    Returns:
        StateDocument. If the file doesn't exist, returns a fresh document.

    Raises:
        StateFileError: The file exists but cannot be parsed or validated.
    """
    if not path.is_file():
        logger.info("No state file at %s — starting fresh", path)
        return StateDocument()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise StateFileError(f"Cannot read state file {path}: {e}") from e
    if not isinstance(data, dict):
        raise StateFileError(f"State file {path} does not contain a JSON object")

    try:
        document = StateDocument.model_validate(migrate(data))
    except ValidationError as e:
        raise StateFileError(f"Invalid state file {path}: {e}") from e

    logger.debug("Loaded state from %s (serial=%d, %d records)", path, document.serial, len(document.records))
    return document


def save_state(document: StateDocument, path: Path) -> None:
    """Save the state document to a JSON file (atomic write).

    Uses write-to-temp-then-rename to prevent corruption.
    """
    document.touch()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = document.model_dump(mode="json")
    content = json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True) + "\n"

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".state_", suffix=".tmp")
    os.close(fd)
    tmp = Path(tmp_path)
    try:
        tmp.write_text(content, encoding="utf-8")
        tmp.replace(path)
        logger.debug("State saved to %s", path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        logger.error("Failed to save state to %s: %s", path, e)
        raise


# ── Store ───────────────────────────────────────────────────────────


class StateStore:
    """Thread-safe access to one state document.

    Args:
        path: Where to persist. None keeps the document in memory only.
        document: Start from this document instead of loading ``path``.
    """

    def __init__(self, path: Path | None = None, document: StateDocument | None = None):
        self._path = path
        self._lock = threading.Lock()
        self._claims: set[str] = set()
        if document is not None:
            self._document = document
        elif path is not None:
            self._document = load_state(path)
        else:
            self._document = StateDocument()

    @property
    def path(self) -> Path | None:
        return self._path

    def snapshot(self) -> StateDocument:
        """Deep copy of the current document."""
        with self._lock:
            return self._document.model_copy(deep=True)

    def get(self, address: str) -> StateRecord | None:
        with self._lock:
            record = self._document.records.get(address)
            return record.model_copy(deep=True) if record else None

    def revision(self, address: str) -> int | None:
        with self._lock:
            record = self._document.records.get(address)
            return record.revision if record else None

    @property
    def serial(self) -> int:
        with self._lock:
            return self._document.serial

    @property
    def lineage(self) -> str:
        with self._lock:
            return self._document.lineage

    # ── Claims ──────────────────────────────────────────────────────

    def claim(self, address: str) -> None:
        """Reserve an address for one writer.

        Raises:
            ConcurrentStateConflictError: Someone else holds the claim.
        """
        with self._lock:
            if address in self._claims:
                raise ConcurrentStateConflictError(address)
            self._claims.add(address)

    def release(self, address: str) -> None:
        with self._lock:
            self._claims.discard(address)

    def check_revision(self, address: str, expected: int | None) -> None:
        """Raise StaleStateReadError unless the record is still at ``expected``."""
        found = self.revision(address)
        if found != expected:
            raise StaleStateReadError(address, expected, found)

    # ── Writes ──────────────────────────────────────────────────────

    def commit(self, record: StateRecord) -> StateRecord:
        """Insert or replace a record and persist the document."""
        with self._lock:
            doc = self._document
            prior = doc.records.get(record.address)
            doc.serial += 1
            record = record.model_copy(deep=True)
            record.revision = doc.serial
            record.updated_at = _now_iso()
            if prior is not None:
                record.created_at = prior.created_at
            doc.records[record.address] = record
            self._persist()
            logger.debug("Committed %s (revision %d)", record.address, record.revision)
            return record.model_copy(deep=True)

    def remove(self, address: str) -> None:
        """Drop a record and persist the document."""
        with self._lock:
            if self._document.records.pop(address, None) is None:
                return
            self._document.serial += 1
            self._persist()
            logger.debug("Removed %s from state", address)

    def save(self) -> None:
        with self._lock:
            self._persist()

    def _persist(self) -> None:
        if self._path is not None:
            save_state(self._document, self._path)
        else:
            self._document.touch()
