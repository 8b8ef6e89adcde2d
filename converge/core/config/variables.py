"""
Variable resolution — layered value sources with strict precedence.

Sources, lowest to highest precedence (later overwrites earlier):

    1. declared default
    2. environment variables  CONVERGE_VAR_<name>
    3. converge.vars.yml      (always loaded when present)
    4. *.auto.vars.yml        (lexicographic by filename)
    5. explicit --var-file    (in the order given)
    6. --var name=value       (in the order given, last one wins)

Names supplied by a source but never declared are ignored with a
warning. The source of each binding is kept only for logging.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any

import yaml

from converge.core.config.types import convert, convert_raw, parse_type
from converge.core.errors import ConfigError, MissingVariableError
from converge.core.models.declaration import VariableDeclaration

logger = logging.getLogger(__name__)

ENV_PREFIX = "CONVERGE_VAR_"
MAIN_VARS_FILE = "converge.vars.yml"
AUTO_VARS_GLOB = "*.auto.vars.yml"


class SourceKind(IntEnum):
    """Source categories ordered by precedence."""

    DEFAULT = 0
    ENVIRONMENT = 1
    MAIN_FILE = 2
    AUTO_FILE = 3
    VAR_FILE = 4
    OVERRIDE = 5


@dataclass
class ValueSource:
    """One layer of variable values.

    ``raw`` sources hold unparsed strings that are converted according
    to each variable's declared type.
    """

    kind: SourceKind
    label: str
    values: dict[str, Any] = field(default_factory=dict)
    raw: bool = False


# ── Source builders ─────────────────────────────────────────────────


def environment_source(environ: Mapping[str, str] | None = None) -> ValueSource:
    """Collect ``CONVERGE_VAR_<name>`` entries from the environment."""
    env = os.environ if environ is None else environ
    values = {
        key[len(ENV_PREFIX):]: value
        for key, value in env.items()
        if key.startswith(ENV_PREFIX) and len(key) > len(ENV_PREFIX)
    }
    return ValueSource(SourceKind.ENVIRONMENT, "environment", values, raw=True)


def file_source(path: Path, kind: SourceKind = SourceKind.VAR_FILE) -> ValueSource:
    """Load a YAML (or JSON) value file.

    Raises:
        ConfigError: If the file is missing, unreadable or not a mapping.
    """
    if not path.is_file():
        raise ConfigError(f"Variable file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read variable file {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping in {path}, got {type(data).__name__}")
    return ValueSource(kind, str(path), data)


def override_source(assignments: Iterable[str]) -> ValueSource:
    """Parse ``name=value`` assignments. Later assignments win."""
    values: dict[str, str] = {}
    for assignment in assignments:
        name, sep, value = assignment.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ConfigError(f"Invalid variable override {assignment!r}, expected name=value")
        values[name] = value
    return ValueSource(SourceKind.OVERRIDE, "command line", values, raw=True)


def collect_sources(
    working_dir: Path,
    *,
    environ: Mapping[str, str] | None = None,
    var_files: Sequence[Path] = (),
    overrides: Sequence[str] = (),
    typed_overrides: Mapping[str, Any] | None = None,
) -> list[ValueSource]:
    """Assemble every value source for a working directory, lowest first."""
    sources = [environment_source(environ)]

    main_file = working_dir / MAIN_VARS_FILE
    if main_file.is_file():
        sources.append(file_source(main_file, SourceKind.MAIN_FILE))

    for path in sorted(working_dir.glob(AUTO_VARS_GLOB), key=lambda p: p.name):
        sources.append(file_source(path, SourceKind.AUTO_FILE))

    for path in var_files:
        sources.append(file_source(Path(path), SourceKind.VAR_FILE))

    if overrides:
        sources.append(override_source(overrides))
    if typed_overrides:
        sources.append(ValueSource(SourceKind.OVERRIDE, "api", dict(typed_overrides)))

    logger.debug("Collected %d variable source(s) from %s", len(sources), working_dir)
    return sources


# ── Resolution ──────────────────────────────────────────────────────


def resolve_variables(
    declarations: Sequence[VariableDeclaration],
    sources: Sequence[ValueSource],
) -> dict[str, Any]:
    """Produce the final name → typed value mapping.

    Sources are applied in precedence order; sources of the same kind keep
    the order they were given in.

    Raises:
        MissingVariableError: A required variable got no value.
        TypeMismatchError: A value does not fit the declared type.
    """
    declared = {d.name: d for d in declarations}
    constraints = {d.name: parse_type(d.type) for d in declarations}
    bindings: dict[str, tuple[Any, str]] = {}

    for decl in declarations:
        if decl.required:
            continue
        # null is a valid default for every type
        value = decl.default
        if value is not None:
            value = convert(value, constraints[decl.name], name=decl.name, source="default")
        bindings[decl.name] = (value, "default")

    for source in sorted(sources, key=lambda s: s.kind):
        for name, value in source.values.items():
            if name not in declared:
                logger.warning("Ignoring value for undeclared variable '%s' from %s", name, source.label)
                continue
            constraint = constraints[name]
            if source.raw and isinstance(value, str):
                typed = convert_raw(value, constraint, name=name, source=source.label)
            else:
                typed = convert(value, constraint, name=name, source=source.label)
            bindings[name] = (typed, source.label)

    for decl in declarations:
        if decl.name not in bindings:
            raise MissingVariableError(decl.name)

    for name, (_, label) in sorted(bindings.items()):
        logger.debug("var.%s resolved from %s", name, label)

    return {name: value for name, (value, _) in bindings.items()}
