"""
Error taxonomy for the reconciliation engine.

Configuration-level errors (everything under ConfigError) abort planning
before any provider call is made. Runtime errors raised during apply are
isolated to a single instance and its dependents by the scheduler.

    ConvergeError
    ├── ConfigError
    │   ├── MissingVariableError
    │   ├── TypeMismatchError
    │   ├── InvalidCountError
    │   ├── InvalidForEachKeysError
    │   ├── UnknownReferenceError
    │   ├── DependencyCycleError
    │   └── ProtectedResourceError
    ├── ProviderError
    │   └── ResourceNotFound
    ├── ProviderOperationFailed
    ├── StaleStateReadError
    ├── ConcurrentStateConflictError
    └── StateFileError
"""

from __future__ import annotations

from collections.abc import Iterable


class ConvergeError(Exception):
    """Base class for every error raised by the engine."""


# ── Configuration errors (pre-execution) ────────────────────────────


class ConfigError(ConvergeError):
    """Raised when configuration is invalid, incomplete, or unreadable."""


class MissingVariableError(ConfigError):
    """A required variable has no default and no source provides it."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No value for required variable '{name}'")


class TypeMismatchError(ConfigError):
    """A variable value does not satisfy its declared type constraint."""

    def __init__(self, name: str, expected: str, detail: str, source: str = ""):
        self.name = name
        self.expected = expected
        self.source = source
        where = f" (from {source})" if source else ""
        super().__init__(f"Variable '{name}'{where}: expected {expected}, {detail}")


class InvalidCountError(ConfigError):
    """A count expression did not evaluate to a non-negative integer."""


class InvalidForEachKeysError(ConfigError):
    """A for_each expression produced an unusable key set."""


class UnknownReferenceError(ConfigError):
    """An expression references a variable, local or resource that does not exist."""


class DependencyCycleError(ConfigError):
    """The dependency graph contains a cycle. Fatal and non-retryable."""

    def __init__(self, members: Iterable[str]):
        self.members = list(members)
        super().__init__("Dependency cycle: " + " -> ".join(self.members))


class ProtectedResourceError(ConfigError):
    """A plan would destroy an instance whose lifecycle sets prevent_destroy."""

    def __init__(self, addresses: Iterable[str]):
        self.addresses = sorted(addresses)
        super().__init__(
            "Plan would destroy protected resource(s): "
            + ", ".join(self.addresses)
            + ". Remove lifecycle.prevent_destroy to allow it."
        )


# ── Provider errors ─────────────────────────────────────────────────


class ProviderError(ConvergeError):
    """Raised by provider implementations.

    ``transient`` marks errors worth retrying (timeouts, rate limits).
    Validation failures and the like are non-transient and surface at once.
    """

    def __init__(self, message: str, *, transient: bool = False):
        self.transient = transient
        super().__init__(message)


class ResourceNotFound(ProviderError):
    """Provider.read found no object for the given external id."""


class ProviderOperationFailed(ConvergeError):
    """A provider call failed after the retry policy gave up."""

    def __init__(self, operation: str, address: str, cause: Exception, attempts: int = 1):
        self.operation = operation
        self.address = address
        self.cause = cause
        self.attempts = attempts
        super().__init__(f"{operation} {address} failed after {attempts} attempt(s): {cause}")


# ── State errors ────────────────────────────────────────────────────


class StaleStateReadError(ConvergeError):
    """A state record changed between plan and apply."""

    def __init__(self, address: str, expected: int | None, found: int | None):
        self.address = address
        self.expected = expected
        self.found = found
        super().__init__(
            f"State for {address} changed since plan "
            f"(planned revision {expected}, current {found}); re-run plan"
        )


class ConcurrentStateConflictError(ConvergeError):
    """Two workers tried to write the same instance at once.

    Indicates a graph-construction bug. Always fatal.
    """

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Concurrent state write for {address}")


class StateFileError(ConvergeError):
    """The state document cannot be read or has an unsupported schema."""
