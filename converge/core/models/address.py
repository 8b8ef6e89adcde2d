"""
Instance addresses — the identity of a resource instance.

An address is (type, name, key). The key is an int for ``count``
expansions, a str for ``for_each`` expansions and None for singletons:

    compute_instance.web
    compute_instance.web[0]
    compute_instance.web["blue"]
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

from converge.core.errors import ConfigError

InstanceKey = int | str | None

_IDENT = r"[A-Za-z_][A-Za-z0-9_-]*"
_ADDRESS_RE = re.compile(
    rf'^(?P<type>{_IDENT})\.(?P<name>{_IDENT})'
    rf'(?:\[(?P<key>\d+|"(?:[^"\\]|\\.)*")\])?'
)


@dataclass(frozen=True)
class InstanceAddress:
    """Identity of one concrete resource instance."""

    resource_type: str
    name: str
    key: InstanceKey = None

    @property
    def declaration(self) -> str:
        """Address of the declaration this instance expands from."""
        return f"{self.resource_type}.{self.name}"

    def with_key(self, key: InstanceKey) -> InstanceAddress:
        return InstanceAddress(self.resource_type, self.name, key)

    def sort_key(self) -> tuple:
        # None < int < str so singletons sort first, then count, then for_each
        if self.key is None:
            rank, key = 0, ""
        elif isinstance(self.key, int):
            rank, key = 1, f"{self.key:012d}"
        else:
            rank, key = 2, self.key
        return (self.resource_type, self.name, rank, key)

    def __str__(self) -> str:
        if self.key is None:
            return self.declaration
        if isinstance(self.key, int):
            return f"{self.declaration}[{self.key}]"
        return f"{self.declaration}[{json.dumps(self.key)}]"


def split_address(text: str) -> tuple[InstanceAddress, str]:
    """Split ``type.name[key].rest`` into an address and the trailing path.

    Returns the address and whatever follows it (without the leading dot).

    Raises:
        ConfigError: If ``text`` does not start with a resource address.
    """
    match = _ADDRESS_RE.match(text.strip())
    if match is None:
        raise ConfigError(f"Invalid resource address: {text!r}")

    raw_key = match.group("key")
    key: InstanceKey
    if raw_key is None:
        key = None
    elif raw_key.startswith('"'):
        key = json.loads(raw_key)
    else:
        key = int(raw_key)

    rest = text.strip()[match.end():]
    if rest and not rest.startswith("."):
        raise ConfigError(f"Invalid resource address: {text!r}")
    return InstanceAddress(match.group("type"), match.group("name"), key), rest[1:]


def parse_address(text: str) -> InstanceAddress:
    """Parse a bare instance address (no trailing attribute path)."""
    address, rest = split_address(text)
    if rest:
        raise ConfigError(f"Expected a resource address, got attribute path: {text!r}")
    return address
