"""
Engine executor — the facade over plan, apply and refresh.

The engine ties the pieces together: it takes a configuration, plans
it against the state store, runs the plan through the scheduler, and
journals what happened.

Flow:
    config + sources → plan → apply (scheduler) → state commits → journal
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from converge.core.config.variables import SourceKind, ValueSource
from converge.core.engine import planner
from converge.core.engine.planner import Plan
from converge.core.engine.scheduler import ApplyResult, CancelToken, Scheduler
from converge.core.errors import ProviderOperationFailed, ResourceNotFound, StateFileError
from converge.core.models.declaration import Configuration
from converge.core.models.settings import EngineSettings
from converge.core.models.state import StateDocument
from converge.core.persistence.audit import AuditEntry, AuditWriter
from converge.core.persistence.state_file import StateStore
from converge.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class Engine:
    """Plan / Apply / Refresh over one state store.

    Args:
        registry: Provider registry for every provider call.
        store: The state store.
        settings: Apply-time settings (parallelism).
        audit: Optional journal writer.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        settings: EngineSettings | None = None,
        audit: AuditWriter | None = None,
    ):
        self._registry = registry
        self._store = store
        self._settings = settings or EngineSettings()
        self._audit = audit

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def plan(
        self,
        config: Configuration,
        variables: Mapping[str, Any] | None = None,
        *,
        sources: Sequence[ValueSource] = (),
        destroy: bool = False,
    ) -> Plan:
        """Plan ``config`` against the current state. Never mutates state.

        Args:
            config: The configuration to reconcile.
            variables: Typed values with the highest precedence.
            sources: Lower-precedence value sources (environment, files).
            destroy: Plan the removal of everything in state instead.
        """
        all_sources = list(sources)
        if variables:
            all_sources.append(ValueSource(SourceKind.OVERRIDE, "api", dict(variables)))
        return planner.plan(
            config,
            self._store.snapshot(),
            self._registry,
            sources=all_sources,
            destroy=destroy,
        )

    def apply(
        self,
        plan: Plan,
        cancel: CancelToken | None = None,
        *,
        parallelism: int | None = None,
    ) -> ApplyResult:
        """Execute a plan and return the per-instance outcome table.

        Raises:
            StateFileError: The plan was made against a different state.
            DependencyCycleError: The operation graph is cyclic.
        """
        if plan.state_lineage and plan.state_lineage != self._store.lineage:
            raise StateFileError(
                f"Plan was made against state lineage {plan.state_lineage}, "
                f"current is {self._store.lineage}; re-run plan"
            )

        operation_id = generate_operation_id()
        start = time.monotonic()
        scheduler = Scheduler(
            plan,
            self._store,
            self._registry,
            parallelism=parallelism or self._settings.parallelism,
            cancel=cancel,
        )
        result = scheduler.run()
        result.operation_id = operation_id
        duration_ms = int((time.monotonic() - start) * 1000)

        logger.info(
            "Apply %s: %s (%d succeeded, %d failed, %d blocked, %d not started)",
            operation_id,
            result.status,
            result.succeeded,
            result.failed,
            result.blocked,
            result.not_started,
        )
        if self._audit is not None:
            write_audit_entry(
                result,
                self._audit,
                operation_type="destroy" if plan.destroy else "apply",
                duration_ms=duration_ms,
            )
        return result

    def refresh(self) -> StateDocument:
        """Re-read every recorded object from its provider.

        Objects that no longer exist are dropped from state. Read failures
        leave the record untouched and are logged.
        """
        operation_id = generate_operation_id()
        start = time.monotonic()
        outcomes: dict[str, str] = {}
        errors: list[str] = []

        for address in self._store.snapshot().addresses():
            record = self._store.get(address)
            if record is None:
                continue
            self._store.claim(address)
            try:
                attributes = self._registry.read(
                    record.provider, address, record.resource_type, record.external_id
                )
            except ResourceNotFound:
                logger.warning("%s (%s) no longer exists; removing from state", address, record.external_id)
                self._store.remove(address)
                outcomes[address] = "removed"
                continue
            except ProviderOperationFailed as e:
                errors.append(str(e))
                outcomes[address] = "failed"
                continue
            finally:
                self._store.release(address)

            if attributes != record.attributes:
                record.attributes = attributes
                self._store.commit(record)
                outcomes[address] = "updated"
            else:
                outcomes[address] = "unchanged"

        logger.info("Refresh %s: %d record(s) read, %d failed", operation_id, len(outcomes), len(errors))
        if self._audit is not None:
            failed = sum(1 for o in outcomes.values() if o == "failed")
            self._audit.write(
                AuditEntry(
                    operation_id=operation_id,
                    operation_type="refresh",
                    status="ok" if not errors else ("partial" if failed < len(outcomes) else "failed"),
                    actions_total=len(outcomes),
                    actions_succeeded=len(outcomes) - failed,
                    actions_failed=failed,
                    duration_ms=int((time.monotonic() - start) * 1000),
                    outcomes=outcomes,
                    errors=errors,
                )
            )
        return self._store.snapshot()


def write_audit_entry(
    result: ApplyResult,
    audit_writer: AuditWriter,
    operation_type: str = "apply",
    duration_ms: int = 0,
) -> None:
    """Write an apply result to the journal."""
    entry = AuditEntry(
        operation_id=result.operation_id,
        operation_type=operation_type,
        status=result.status,
        actions_total=len(result.outcomes),
        actions_succeeded=result.succeeded,
        actions_failed=result.failed,
        actions_blocked=result.blocked,
        duration_ms=duration_ms,
        outcomes={address: o.outcome.value for address, o in result.outcomes.items()},
        errors=[f"{o.address}: {o.error}" for o in result.outcomes.values() if o.error]
        + ([result.error] if result.error else []),
        context={"cancelled": result.cancelled, "serial": result.state.serial},
    )
    audit_writer.write(entry)


def generate_operation_id() -> str:
    """Generate a unique operation ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"op-{now}-{short}"
