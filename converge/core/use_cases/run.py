"""
Run use cases — validate, plan, apply, destroy, refresh, inspect state.

These are the top-level orchestrators behind the CLI: each loads the
configuration, assembles variable sources, opens the state store, wires
a provider registry and an engine, and returns a result object that the
CLI renders as text or JSON. Errors are captured in ``result.error``
rather than raised, so callers never need a try/except.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from converge.core.config.loader import config_root, find_config_file, load_configuration
from converge.core.config.variables import collect_sources, resolve_variables
from converge.core.engine.executor import Engine
from converge.core.engine.graph import build_declaration_graph
from converge.core.engine.planner import Plan
from converge.core.engine.scheduler import ApplyResult, CancelToken
from converge.core.errors import ConfigError, ConvergeError
from converge.core.models.declaration import Configuration
from converge.core.models.settings import EngineSettings
from converge.core.models.state import StateDocument, StateRecord
from converge.core.persistence.audit import AuditWriter
from converge.core.persistence.state_file import StateStore, load_state
from converge.core.reliability.circuit_breaker import CircuitBreakerRegistry
from converge.core.reliability.retry import RetryPolicy
from converge.providers.mock import MockProvider
from converge.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

MOCK_CLOUD_FILE = "mock-cloud.json"


@dataclass
class RunResult:
    """Result of one CLI-level operation."""

    root: Path | None = None
    config: Configuration | None = None
    plan: Plan | None = None
    apply: ApplyResult | None = None
    state: StateDocument | None = None
    record: StateRecord | None = None
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        if self.error:
            return False
        return self.apply is None or self.apply.all_ok

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.error:
            result["error"] = self.error
            return result

        result["root"] = str(self.root) if self.root else None
        if self.plan is not None:
            result["plan"] = self.plan.to_dict()
        if self.apply is not None:
            result["apply"] = self.apply.to_dict()
        if self.record is not None:
            result["record"] = self.record.model_dump(mode="json")
        elif self.state is not None:
            result["state"] = {
                "lineage": self.state.lineage,
                "serial": self.state.serial,
                "addresses": self.state.addresses(),
            }
        result.update(self.details)
        return result


# ── Wiring ──────────────────────────────────────────────────────────


@dataclass
class Workspace:
    """Everything one operation needs, loaded from disk."""

    root: Path
    config: Configuration
    engine: Engine


def build_registry(root: Path, settings: EngineSettings) -> ProviderRegistry:
    """Default registry: every alias served by a file-backed mock cloud."""
    registry = ProviderRegistry(
        circuit_breakers=CircuitBreakerRegistry(
            default_threshold=settings.breaker_threshold,
            default_timeout=settings.breaker_timeout,
        ),
        retry=RetryPolicy(
            max_attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        ),
    )
    state_dir = (root / settings.state_path).parent
    registry.set_mock_mode(True, MockProvider(path=state_dir / MOCK_CLOUD_FILE))
    return registry


def open_workspace(
    config_path: Path | None = None,
    *,
    state_path: Path | None = None,
    parallelism: int | None = None,
    registry: ProviderRegistry | None = None,
) -> Workspace:
    """Load config, open the state store and build an engine.

    Raises:
        ConfigError: Missing or invalid configuration.
        StateFileError: Unreadable state document.
    """
    if config_path is None:
        config_path = find_config_file()
    if config_path is None:
        raise ConfigError("No converge.yml found.")

    config = load_configuration(config_path)
    root = config_root(config_path)
    settings = config.settings
    if parallelism is not None:
        settings = settings.model_copy(update={"parallelism": parallelism})
        config.settings = settings

    path = state_path or root / settings.state_path
    store = StateStore(path)
    engine = Engine(
        registry or build_registry(root, settings),
        store,
        settings=settings,
        audit=AuditWriter(root=root),
    )
    return Workspace(root=root, config=config, engine=engine)


# ── Use cases ───────────────────────────────────────────────────────


def validate_config(
    config_path: Path | None = None,
    *,
    var_files: Sequence[Path] = (),
    overrides: Sequence[str] = (),
    environ: Mapping[str, str] | None = None,
) -> RunResult:
    """Check that the configuration loads, its variables resolve and its graph is acyclic."""
    result = RunResult()
    try:
        if config_path is None:
            config_path = find_config_file()
        if config_path is None:
            raise ConfigError("No converge.yml found.")
        config = load_configuration(config_path)
        result.root = config_root(config_path)
        result.config = config
        sources = collect_sources(result.root, environ=environ, var_files=var_files, overrides=overrides)
        variables = resolve_variables(config.variables, sources)
        graph = build_declaration_graph(config)
    except ConvergeError as e:
        result.error = str(e)
        return result

    result.details = {
        "resources": len(config.declarations),
        "variables": sorted(variables),
        "locals": sorted(config.locals),
        "order": graph.topological_order(),
    }
    return result


def plan_changes(
    config_path: Path | None = None,
    *,
    var_files: Sequence[Path] = (),
    overrides: Sequence[str] = (),
    environ: Mapping[str, str] | None = None,
    destroy: bool = False,
    state_path: Path | None = None,
    registry: ProviderRegistry | None = None,
) -> RunResult:
    """Compute a plan without touching state or providers."""
    result = RunResult()
    try:
        ws = open_workspace(config_path, state_path=state_path, registry=registry)
        result.root, result.config = ws.root, ws.config
        sources = collect_sources(ws.root, environ=environ, var_files=var_files, overrides=overrides)
        result.plan = ws.engine.plan(ws.config, sources=sources, destroy=destroy)
    except ConvergeError as e:
        result.error = str(e)
    return result


def apply_changes(
    config_path: Path | None = None,
    *,
    var_files: Sequence[Path] = (),
    overrides: Sequence[str] = (),
    environ: Mapping[str, str] | None = None,
    destroy: bool = False,
    parallelism: int | None = None,
    state_path: Path | None = None,
    registry: ProviderRegistry | None = None,
    cancel: CancelToken | None = None,
) -> RunResult:
    """Plan and immediately apply."""
    result = RunResult()
    try:
        ws = open_workspace(config_path, state_path=state_path, parallelism=parallelism, registry=registry)
        result.root, result.config = ws.root, ws.config
        sources = collect_sources(ws.root, environ=environ, var_files=var_files, overrides=overrides)
        result.plan = ws.engine.plan(ws.config, sources=sources, destroy=destroy)
        result.apply = ws.engine.apply(result.plan, cancel=cancel)
        result.state = result.apply.state
    except ConvergeError as e:
        result.error = str(e)
    return result


def refresh_state(
    config_path: Path | None = None,
    *,
    state_path: Path | None = None,
    registry: ProviderRegistry | None = None,
) -> RunResult:
    """Re-read every recorded object from its provider."""
    result = RunResult()
    try:
        ws = open_workspace(config_path, state_path=state_path, registry=registry)
        result.root = ws.root
        before = ws.engine.store.snapshot()
        result.state = ws.engine.refresh()
    except ConvergeError as e:
        result.error = str(e)
        return result

    result.details = {
        "removed": sorted(set(before.records) - set(result.state.records)),
        "changed": sorted(
            address
            for address, record in result.state.records.items()
            if address in before.records and record.revision != before.records[address].revision
        ),
    }
    return result


def read_state(
    config_path: Path | None = None,
    *,
    state_path: Path | None = None,
    address: str | None = None,
) -> RunResult:
    """Load the state document (and optionally one record) without a provider."""
    result = RunResult()
    try:
        if state_path is None:
            if config_path is None:
                config_path = find_config_file()
            if config_path is None:
                raise ConfigError("No converge.yml found.")
            result.root = config_root(config_path)
            settings = load_configuration(config_path).settings
            state_path = result.root / settings.state_path
        result.state = load_state(state_path)
    except ConvergeError as e:
        result.error = str(e)
        return result

    if address is not None:
        result.record = result.state.get(address)
        if result.record is None:
            result.error = f"No state record for {address}"
    return result
