"""
Mock provider — universal test double for all provider operations.

Used in mock mode to simulate a cloud API without touching one. Objects
live in memory and are optionally persisted to a JSON file so separate
CLI invocations see the same "cloud". Failures, transient failures and
per-call delays can be injected for tests.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from converge.core.errors import ProviderError, ResourceNotFound
from converge.providers.base import Provider

logger = logging.getLogger(__name__)


@dataclass
class ProviderCall:
    """One recorded call against the mock."""

    operation: str
    resource_type: str
    external_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    started: float = 0.0
    finished: float = 0.0


@dataclass
class _Failure:
    operation: str
    match: dict[str, Any]
    message: str
    transient: bool
    remaining: int | None       # None = fail forever


class MockProvider(Provider):
    """In-memory provider for testing and for the CLI's mock mode.

    Every created object gets an ``id`` attribute equal to its external id,
    which stands in for provider-computed attributes.
    """

    def __init__(
        self,
        provider_name: str = "mock",
        *,
        force_new: Mapping[str, frozenset[str]] | None = None,
        path: Path | None = None,
        delay: float = 0.0,
    ):
        self._name = provider_name
        self.force_new = dict(force_new or {})
        self._path = path
        self._delay = delay
        self._lock = threading.Lock()
        self._objects: dict[str, dict[str, Any]] = {}
        self._counter = 0
        self._failures: list[_Failure] = []
        self._call_log: list[ProviderCall] = []
        self._active = 0
        self.max_active = 0
        if path is not None:
            self._load()

    @property
    def name(self) -> str:
        return self._name

    @property
    def call_log(self) -> list[ProviderCall]:
        """All calls this mock has received, in start order."""
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def calls(self, operation: str) -> list[ProviderCall]:
        return [c for c in self._call_log if c.operation == operation]

    # ── Object inspection (tests) ───────────────────────────────────

    @property
    def objects(self) -> dict[str, dict[str, Any]]:
        """external_id → {"type": ..., "attributes": {...}}"""
        return self._objects

    def get_object(self, external_id: str) -> dict[str, Any] | None:
        obj = self._objects.get(external_id)
        return copy.deepcopy(obj["attributes"]) if obj else None

    def drift(self, external_id: str, **changes: Any) -> None:
        """Change an object behind the engine's back."""
        with self._lock:
            if external_id not in self._objects:
                raise KeyError(external_id)
            self._objects[external_id]["attributes"].update(copy.deepcopy(changes))
            self._save()

    def vanish(self, external_id: str) -> None:
        """Delete an object out of band."""
        with self._lock:
            self._objects.pop(external_id, None)
            self._save()

    # ── Failure injection ───────────────────────────────────────────

    def set_failure(
        self,
        operation: str,
        match: Mapping[str, Any] | None = None,
        *,
        message: str = "Mock failure",
        transient: bool = False,
        times: int | None = None,
    ) -> None:
        """Make matching calls fail.

        Args:
            operation: create, read, update or delete.
            match: Attribute subset the target object (or the desired
                attributes, for create) must contain. Empty matches all.
            transient: Raise a retryable error.
            times: Fail only this many matching calls.
        """
        self._failures.append(_Failure(operation, dict(match or {}), message, transient, times))

    def reset(self) -> None:
        """Clear call log and injected failures (objects are kept)."""
        self._call_log.clear()
        self._failures.clear()
        self.max_active = 0

    # ── Provider interface ──────────────────────────────────────────

    def create(self, resource_type: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        with self._call("create", resource_type, None, attributes):
            with self._lock:
                self._counter += 1
                external_id = f"{resource_type}-{self._counter:04d}"
                actual = copy.deepcopy(attributes)
                actual["id"] = external_id
                self._objects[external_id] = {"type": resource_type, "attributes": actual}
                self._save()
            logger.debug("[mock] created %s", external_id)
            return external_id, copy.deepcopy(actual)

    def read(self, resource_type: str, external_id: str) -> dict[str, Any]:
        with self._call("read", resource_type, external_id):
            with self._lock:
                obj = self._objects.get(external_id)
                if obj is None:
                    raise ResourceNotFound(f"{resource_type} {external_id} not found")
                return copy.deepcopy(obj["attributes"])

    def update(
        self, resource_type: str, external_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]:
        with self._call("update", resource_type, external_id, changes):
            with self._lock:
                obj = self._objects.get(external_id)
                if obj is None:
                    raise ResourceNotFound(f"{resource_type} {external_id} not found")
                obj["attributes"].update(copy.deepcopy(changes))
                self._save()
                return copy.deepcopy(obj["attributes"])

    def delete(self, resource_type: str, external_id: str) -> None:
        with self._call("delete", resource_type, external_id):
            with self._lock:
                if self._objects.pop(external_id, None) is None:
                    raise ResourceNotFound(f"{resource_type} {external_id} not found")
                self._save()
            logger.debug("[mock] deleted %s", external_id)

    # ── Internals ───────────────────────────────────────────────────

    def _call(
        self,
        operation: str,
        resource_type: str,
        external_id: str | None,
        attributes: Mapping[str, Any] | None = None,
    ) -> _CallScope:
        return _CallScope(self, ProviderCall(
            operation=operation,
            resource_type=resource_type,
            external_id=external_id,
            attributes=copy.deepcopy(dict(attributes or {})),
        ))

    def _check_failure(self, call: ProviderCall) -> None:
        with self._lock:
            if call.external_id is not None and call.external_id in self._objects:
                target = self._objects[call.external_id]["attributes"]
            else:
                target = call.attributes
            for failure in self._failures:
                if failure.operation != call.operation or failure.remaining == 0:
                    continue
                if any(target.get(k) != v for k, v in failure.match.items()):
                    continue
                if failure.remaining is not None:
                    failure.remaining -= 1
                raise ProviderError(failure.message, transient=failure.transient)

    def _load(self) -> None:
        assert self._path is not None
        if not self._path.is_file():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning("Corrupt mock store %s: %s — starting empty", self._path, e)
            return
        self._objects = data.get("objects", {})
        self._counter = data.get("counter", 0)

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"counter": self._counter, "objects": self._objects}
        self._path.write_text(json.dumps(payload, indent=2, default=str) + "\n", encoding="utf-8")


class _CallScope:
    """Records a call, tracks concurrency, applies delay and injected failures."""

    def __init__(self, mock: MockProvider, call: ProviderCall):
        self._mock = mock
        self._call = call

    def __enter__(self) -> ProviderCall:
        mock = self._mock
        with mock._lock:
            self._call.started = time.monotonic()
            mock._call_log.append(self._call)
            mock._active += 1
            mock.max_active = max(mock.max_active, mock._active)
        try:
            if mock._delay:
                time.sleep(mock._delay)
            mock._check_failure(self._call)
        except BaseException:
            self._leave()
            raise
        return self._call

    def __exit__(self, *exc: object) -> None:
        self._leave()

    def _leave(self) -> None:
        with self._mock._lock:
            self._mock._active -= 1
            self._call.finished = time.monotonic()
