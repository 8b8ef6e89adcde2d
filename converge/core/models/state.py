"""
StateDocument — the authoritative record of what the engine believes exists.

Serialized to .converge/state.json and loaded on every operation. Unlike
the configuration, state is NOT disposable: it is the only link between
an instance address and the real object a provider created for it.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

SCHEMA_VERSION = 2


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class LifecycleSnapshot(BaseModel):
    """Lifecycle flags remembered for instances whose declaration is gone."""

    prevent_destroy: bool = False
    create_before_destroy: bool = False


class DeposedObject(BaseModel):
    """An old object kept alive while its replacement is created first."""

    external_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    deposed_at: str = Field(default_factory=_now_iso)


class StateRecord(BaseModel):
    """Last-known belief about one real resource."""

    address: str
    resource_type: str
    provider: str
    external_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)

    fingerprint: str = ""                       # declaration content hash
    dependencies: list[str] = Field(default_factory=list)
    lifecycle: LifecycleSnapshot = Field(default_factory=LifecycleSnapshot)
    deposed: list[DeposedObject] = Field(default_factory=list)

    revision: int = 1                           # bumped on every commit
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)


class StateDocument(BaseModel):
    """Root state model — serialized to .converge/state.json."""

    # ── Schema ───────────────────────────────────────────────────
    schema_version: int = SCHEMA_VERSION

    # ── Identity ─────────────────────────────────────────────────
    lineage: str = Field(default_factory=lambda: uuid.uuid4().hex)
    serial: int = 0

    # ── Timestamps ───────────────────────────────────────────────
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    # ── Records ──────────────────────────────────────────────────
    records: dict[str, StateRecord] = Field(default_factory=dict)

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = _now_iso()

    def get(self, address: str) -> StateRecord | None:
        return self.records.get(address)

    def addresses(self) -> list[str]:
        return sorted(self.records)
