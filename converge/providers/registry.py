"""
Provider registry — central dispatch for all provider calls.

The registry is the single point of provider management. It maps aliases
to provider instances, handles mock mode, and wraps every call with the
retry policy and a per-alias circuit breaker. The scheduler never talks
to providers directly — always through the registry.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from converge.core.errors import ConfigError, ProviderError, ProviderOperationFailed
from converge.core.reliability.circuit_breaker import CircuitBreakerRegistry
from converge.core.reliability.retry import RetryPolicy
from converge.providers.base import Provider

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderRegistry:
    """Alias → provider mapping and call dispatcher.

    Features:
        - Register providers under one or more aliases (``google``, ``google.west``)
        - Mock mode: serve every alias from a single mock provider
        - Retry transient failures, trip a breaker on repeated failures
    """

    def __init__(
        self,
        mock_mode: bool = False,
        circuit_breakers: CircuitBreakerRegistry | None = None,
        retry: RetryPolicy | None = None,
    ):
        self._providers: dict[str, Provider] = {}
        self._mock_mode = mock_mode
        self._mock_provider: Provider | None = None
        self._circuit_breakers = circuit_breakers
        self._retry = retry or RetryPolicy()

    @property
    def mock_mode(self) -> bool:
        return self._mock_mode

    @property
    def retry(self) -> RetryPolicy:
        return self._retry

    def set_mock_mode(self, enabled: bool, mock_provider: Provider | None = None) -> None:
        """Enable or disable mock mode.

        Args:
            enabled: Whether to use mock mode.
            mock_provider: Provider serving every alias while enabled.
        """
        self._mock_mode = enabled
        self._mock_provider = mock_provider

    def register(self, provider: Provider, alias: str | None = None) -> None:
        """Register a provider under ``alias`` (defaults to its name)."""
        alias = alias or provider.name
        if alias in self._providers:
            logger.warning("Overwriting existing provider alias: %s", alias)
        self._providers[alias] = provider
        logger.debug("Registered provider %s as '%s'", provider.name, alias)

    def unregister(self, alias: str) -> None:
        """Remove a provider alias from the registry."""
        self._providers.pop(alias, None)

    def get(self, alias: str) -> Provider | None:
        """Look up the provider serving an alias."""
        if self._mock_mode and self._mock_provider is not None:
            return self._mock_provider
        return self._providers.get(alias)

    def require(self, alias: str) -> Provider:
        """Like get(), but a missing alias is a configuration error."""
        provider = self.get(alias)
        if provider is None:
            raise ConfigError(f"No provider configured for alias '{alias}'")
        return provider

    def list_aliases(self) -> list[str]:
        return sorted(self._providers)

    def requires_replacement(self, alias: str, resource_type: str, attribute: str) -> bool:
        return self.require(alias).requires_replacement(resource_type, attribute)

    # ── Dispatch ────────────────────────────────────────────────────

    def create(
        self, alias: str, address: str, resource_type: str, attributes: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        provider = self.require(alias)
        return self._dispatch(
            alias, "create", address, lambda: provider.create(resource_type, attributes)
        )

    def read(self, alias: str, address: str, resource_type: str, external_id: str) -> dict[str, Any]:
        provider = self.require(alias)
        return self._dispatch(alias, "read", address, lambda: provider.read(resource_type, external_id))

    def update(
        self,
        alias: str,
        address: str,
        resource_type: str,
        external_id: str,
        changes: dict[str, Any],
    ) -> dict[str, Any]:
        provider = self.require(alias)
        return self._dispatch(
            alias, "update", address, lambda: provider.update(resource_type, external_id, changes)
        )

    def delete(self, alias: str, address: str, resource_type: str, external_id: str) -> None:
        provider = self.require(alias)
        self._dispatch(alias, "delete", address, lambda: provider.delete(resource_type, external_id))

    def _dispatch(self, alias: str, operation: str, address: str, fn: Callable[[], T]) -> T:
        """Run one provider call under the breaker and retry policy.

        ResourceNotFound is not a provider malfunction: it passes through
        and does not count against the breaker.
        """
        start = time.monotonic()

        # ── Circuit breaker check ────────────────────────────────
        breaker = self._circuit_breakers.get_or_create(alias) if self._circuit_breakers else None
        if breaker is not None and not breaker.allow_request():
            raise ProviderOperationFailed(
                operation,
                address,
                ProviderError(f"Circuit breaker OPEN for provider '{alias}'"),
                attempts=0,
            )

        try:
            result = self._retry.run(fn, operation=operation, address=address)
        except ProviderOperationFailed as e:
            logger.error("%s", e)
            if breaker is not None:
                breaker.record_failure()
            raise

        # ── Circuit breaker record ───────────────────────────────
        if breaker is not None:
            breaker.record_success()

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.debug("%s %s via '%s' took %dms", operation, address, alias, elapsed_ms)
        return result
