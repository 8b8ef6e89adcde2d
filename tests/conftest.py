"""
Shared test fixtures and configuration.
"""

import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from converge.core.config.loader import parse_configuration
from converge.core.engine.executor import Engine
from converge.core.models.declaration import Configuration
from converge.core.persistence.state_file import StateStore
from converge.core.reliability.retry import RetryPolicy
from converge.providers.mock import MockProvider
from converge.providers.registry import ProviderRegistry


def _no_sleep(_: float) -> None:
    pass


@pytest.fixture
def mock_provider() -> MockProvider:
    """Mock cloud where changing an instance image forces replacement."""
    return MockProvider(force_new={"compute_instance": frozenset({"image"})})


@pytest.fixture
def registry(mock_provider: MockProvider) -> ProviderRegistry:
    """Registry serving every alias from the mock, retries without sleeping."""
    reg = ProviderRegistry(retry=RetryPolicy(sleep=_no_sleep))
    reg.set_mock_mode(True, mock_provider)
    return reg


@pytest.fixture
def store() -> StateStore:
    """In-memory state store."""
    return StateStore()


@pytest.fixture
def engine(registry: ProviderRegistry, store: StateStore) -> Engine:
    return Engine(registry, store)


@pytest.fixture
def make_config() -> Callable[[str], Configuration]:
    """Build a Configuration from an indented YAML snippet."""

    def _make(text: str) -> Configuration:
        return parse_configuration(yaml.safe_load(textwrap.dedent(text)))

    return _make


@pytest.fixture
def tmp_state_dir(tmp_path: Path) -> Path:
    """Return a temporary directory for state files."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir
