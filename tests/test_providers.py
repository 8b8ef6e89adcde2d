"""
Tests for providers — the mock cloud and the provider registry.
"""

from pathlib import Path

import pytest

from converge.core.errors import ConfigError, ProviderError, ProviderOperationFailed, ResourceNotFound
from converge.core.reliability.circuit_breaker import CircuitBreakerRegistry, CircuitState
from converge.core.reliability.retry import RetryPolicy
from converge.providers.mock import MockProvider
from converge.providers.registry import ProviderRegistry

# ── Mock provider ────────────────────────────────────────────────────


class TestMockProvider:
    def test_crud(self):
        mock = MockProvider()
        ext_id, attrs = mock.create("compute_disk", {"size": 1})
        assert ext_id == "compute_disk-0001"
        assert attrs == {"size": 1, "id": ext_id}
        assert mock.read("compute_disk", ext_id) == attrs

        assert mock.update("compute_disk", ext_id, {"size": 2})["size"] == 2
        mock.delete("compute_disk", ext_id)
        with pytest.raises(ResourceNotFound):
            mock.read("compute_disk", ext_id)
        assert [c.operation for c in mock.call_log] == ["create", "read", "update", "delete", "read"]

    def test_missing_object(self):
        mock = MockProvider()
        with pytest.raises(ResourceNotFound):
            mock.delete("compute_disk", "nope")
        with pytest.raises(ResourceNotFound):
            mock.update("compute_disk", "nope", {})

    def test_returned_attributes_are_copies(self):
        mock = MockProvider()
        ext_id, attrs = mock.create("compute_disk", {"tags": {"a": 1}})
        attrs["tags"]["a"] = 2
        assert mock.get_object(ext_id)["tags"] == {"a": 1}

    def test_failure_matching(self):
        mock = MockProvider()
        mock.set_failure("create", {"name": "bad"}, message="rejected")
        mock.create("compute_disk", {"name": "good"})
        with pytest.raises(ProviderError, match="rejected"):
            mock.create("compute_disk", {"name": "bad"})

    def test_failure_on_existing_object(self):
        mock = MockProvider()
        ext_id, _ = mock.create("compute_disk", {"name": "x"})
        mock.set_failure("delete", {"name": "x"}, transient=True, times=1)
        with pytest.raises(ProviderError) as exc:
            mock.delete("compute_disk", ext_id)
        assert exc.value.transient is True
        mock.delete("compute_disk", ext_id)
        assert mock.objects == {}

    def test_force_new(self):
        mock = MockProvider(force_new={"compute_instance": frozenset({"image"})})
        assert mock.requires_replacement("compute_instance", "image")
        assert not mock.requires_replacement("compute_instance", "size")
        assert not mock.requires_replacement("compute_disk", "image")

    def test_drift_and_vanish(self):
        mock = MockProvider()
        ext_id, _ = mock.create("compute_disk", {"size": 1})
        mock.drift(ext_id, size=5)
        assert mock.get_object(ext_id)["size"] == 5
        mock.vanish(ext_id)
        assert mock.get_object(ext_id) is None

    def test_reset_keeps_objects(self):
        mock = MockProvider()
        mock.create("compute_disk", {})
        mock.set_failure("create")
        mock.reset()
        assert mock.call_count == 0
        mock.create("compute_disk", {})
        assert len(mock.objects) == 2

    def test_persistence(self, tmp_path: Path):
        path = tmp_path / "cloud.json"
        first = MockProvider(path=path)
        ext_id, _ = first.create("compute_disk", {"size": 1})

        second = MockProvider(path=path)
        assert second.read("compute_disk", ext_id) == {"size": 1, "id": ext_id}
        next_id, _ = second.create("compute_disk", {})
        assert next_id == "compute_disk-0002"

    def test_corrupt_store_starts_empty(self, tmp_path: Path):
        path = tmp_path / "cloud.json"
        path.write_text("{nope")
        assert MockProvider(path=path).objects == {}


# ── Registry ─────────────────────────────────────────────────────────


class TestProviderRegistry:
    def test_register_and_require(self):
        registry = ProviderRegistry()
        mock = MockProvider("google")
        registry.register(mock)
        registry.register(mock, alias="google.west")
        assert registry.list_aliases() == ["google", "google.west"]
        assert registry.require("google.west") is mock

        registry.unregister("google.west")
        with pytest.raises(ConfigError, match="google.west"):
            registry.require("google.west")

    def test_mock_mode_serves_every_alias(self):
        registry = ProviderRegistry()
        mock = MockProvider()
        registry.set_mock_mode(True, mock)
        assert registry.mock_mode
        assert registry.get("anything") is mock

    def test_dispatch_retries_transient(self):
        mock = MockProvider()
        mock.set_failure("create", transient=True, times=1)
        registry = ProviderRegistry(retry=RetryPolicy(sleep=lambda _: None))
        registry.register(mock, alias="compute")

        ext_id, _ = registry.create("compute", "compute_disk.d", "compute_disk", {"size": 1})
        assert ext_id in mock.objects
        assert len(mock.calls("create")) == 2

    def test_dispatch_wraps_permanent_failure(self):
        mock = MockProvider()
        mock.set_failure("create", message="bad request")
        registry = ProviderRegistry()
        registry.register(mock, alias="compute")
        with pytest.raises(ProviderOperationFailed, match="create compute_disk.d failed"):
            registry.create("compute", "compute_disk.d", "compute_disk", {})

    def test_not_found_passes_through(self):
        registry = ProviderRegistry()
        registry.register(MockProvider(), alias="compute")
        with pytest.raises(ResourceNotFound):
            registry.read("compute", "compute_disk.d", "compute_disk", "missing")

    def test_breaker_opens(self):
        mock = MockProvider()
        mock.set_failure("create")
        breakers = CircuitBreakerRegistry(default_threshold=2, default_timeout=60)
        registry = ProviderRegistry(circuit_breakers=breakers)
        registry.register(mock, alias="compute")

        for _ in range(2):
            with pytest.raises(ProviderOperationFailed):
                registry.create("compute", "compute_disk.d", "compute_disk", {})
        assert breakers.get_or_create("compute").state == CircuitState.OPEN

        with pytest.raises(ProviderOperationFailed, match="Circuit breaker OPEN") as exc:
            registry.create("compute", "compute_disk.d", "compute_disk", {})
        assert exc.value.attempts == 0
        assert len(mock.calls("create")) == 2

    def test_requires_replacement_delegates(self):
        registry = ProviderRegistry()
        registry.register(MockProvider(force_new={"compute_instance": frozenset({"image"})}), alias="compute")
        assert registry.requires_replacement("compute", "compute_instance", "image")
