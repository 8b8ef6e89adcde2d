"""
Provider base — the contract between the engine and a cloud API.

The engine only talks to providers through this interface and only
through the ProviderRegistry, never directly. A provider owns one or
more resource types and exposes plain CRUD on them.

Providers signal failure by raising ProviderError. Set ``transient=True``
for errors worth retrying (timeouts, throttling); anything else is
surfaced without retry. ``read`` and ``delete`` raise ResourceNotFound
when the object no longer exists.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, ClassVar


class Provider(ABC):
    """Abstract base class for all providers.

    To create a new provider:
        1. Subclass Provider
        2. Implement name, create, read, update, delete
        3. List attributes that force replacement in ``force_new``
        4. Register it in the ProviderRegistry under one or more aliases
    """

    #: resource type → attributes that cannot be changed in place
    force_new: ClassVar[Mapping[str, frozenset[str]]] = {}

    @property
    @abstractmethod
    def name(self) -> str:
        """The provider identifier (e.g., 'google', 'aws')."""

    @abstractmethod
    def create(self, resource_type: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create an object.

        Returns:
            (external_id, actual_attributes)
        """

    @abstractmethod
    def read(self, resource_type: str, external_id: str) -> dict[str, Any]:
        """Return the object's current attributes or raise ResourceNotFound."""

    @abstractmethod
    def update(
        self, resource_type: str, external_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]:
        """Apply an attribute diff in place and return the actual attributes."""

    @abstractmethod
    def delete(self, resource_type: str, external_id: str) -> None:
        """Delete the object or raise ResourceNotFound if it is already gone."""

    def requires_replacement(self, resource_type: str, attribute: str) -> bool:
        """Whether changing ``attribute`` forces destroy + create."""
        return attribute in self.force_new.get(resource_type, frozenset())

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
