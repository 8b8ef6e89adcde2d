"""
Configuration loader — reads converge.yml into a Configuration.

The document is plain YAML; no expression language is parsed. Values
that are not literal are written as single-key directive mappings:

    {"$ref": "var.region"}                          reference
    {"$ref": "compute_network.main.id"}             resource attribute
    {"$format": ["srv-{}", {"$ref": "count.index"}]} string template
    {"$set": ["a", "b"]}                            unordered set

Layout:

    settings:  {parallelism: 4}
    variables: {region: {type: string, default: us-east1}}
    locals:    {prefix: {"$format": ["{}-app", {"$ref": "var.region"}]}}
    resources:
      compute_instance:
        web:
          count: 2
          lifecycle: {create_before_destroy: true}
          name: {"$format": ["srv-{}", {"$ref": "count.index"}]}

Inside a resource block the keys ``count``, ``for_each``, ``depends_on``,
``lifecycle`` and ``provider`` are meta-arguments; every other key is an
attribute.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from converge.core.errors import ConfigError
from converge.core.models.address import parse_address
from converge.core.models.declaration import (
    NO_DEFAULT,
    Configuration,
    Declaration,
    LifecyclePolicy,
    VariableDeclaration,
)
from converge.core.models.expressions import (
    Expression,
    Format,
    ListExpr,
    Literal,
    MapExpr,
    SetExpr,
    parse_reference,
)
from converge.core.models.settings import EngineSettings

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "converge.yml"

META_ARGUMENTS = frozenset({"count", "for_each", "depends_on", "lifecycle", "provider"})


# ── Document schema ─────────────────────────────────────────────────


class VariableDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str = "any"
    default: Any = None
    description: str = ""


class LifecycleDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: list[str] = Field(default_factory=list)
    replace_triggered_by: list[str] = Field(default_factory=list)


class ConfigDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    settings: EngineSettings = Field(default_factory=EngineSettings)
    variables: dict[str, VariableDocument | None] = Field(default_factory=dict)
    locals: dict[str, Any] = Field(default_factory=dict)
    resources: dict[str, dict[str, dict[str, Any] | None]] = Field(default_factory=dict)


# ── Expressions ─────────────────────────────────────────────────────


def parse_expression(data: Any, where: str = "") -> Expression:
    """Decode a YAML value into an expression tree.

    Composite values without any directive inside collapse to a Literal.

    Raises:
        ConfigError: On an unknown or malformed directive.
    """
    at = f" at {where}" if where else ""

    if isinstance(data, dict) and len(data) == 1:
        key, value = next(iter(data.items()))
        if isinstance(key, str) and key.startswith("$"):
            if key == "$ref":
                if not isinstance(value, str):
                    raise ConfigError(f"$ref expects a string{at}, got {value!r}")
                return parse_reference(value)
            if key == "$format":
                if not isinstance(value, list) or not value or not isinstance(value[0], str):
                    raise ConfigError(f"$format expects [template, args...]{at}")
                args = tuple(parse_expression(a, where) for a in value[1:])
                return Format(value[0], args)
            if key == "$set":
                if not isinstance(value, list):
                    raise ConfigError(f"$set expects a list{at}")
                return SetExpr(tuple(parse_expression(v, where) for v in value))
            raise ConfigError(f"Unknown directive {key!r}{at}")

    if isinstance(data, dict):
        items = tuple((str(k), parse_expression(v, f"{where}.{k}" if where else str(k))) for k, v in data.items())
        if all(isinstance(v, Literal) for _, v in items):
            return Literal({k: v.value for k, v in items})  # type: ignore[union-attr]
        return MapExpr(items)

    if isinstance(data, list):
        elements = tuple(parse_expression(v, where) for v in data)
        if all(isinstance(v, Literal) for v in elements):
            return Literal([v.value for v in elements])  # type: ignore[union-attr]
        return ListExpr(elements)

    return Literal(data)


# ── Declarations ────────────────────────────────────────────────────


def _parse_lifecycle(raw: Any, where: str) -> LifecyclePolicy:
    try:
        doc = LifecycleDocument.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigError(f"{where}: invalid lifecycle block: {e}") from e
    return LifecyclePolicy(
        create_before_destroy=doc.create_before_destroy,
        prevent_destroy=doc.prevent_destroy,
        ignore_changes=frozenset(doc.ignore_changes),
        replace_triggered_by=tuple(parse_address(a) for a in doc.replace_triggered_by),
    )


def _parse_resource(resource_type: str, name: str, body: dict[str, Any]) -> Declaration:
    where = f"{resource_type}.{name}"
    parse_address(where)  # validates both identifiers

    depends_on = body.get("depends_on") or []
    if not isinstance(depends_on, list) or not all(isinstance(a, str) for a in depends_on):
        raise ConfigError(f"{where}: depends_on must be a list of resource addresses")
    provider = body.get("provider")
    if provider is not None and not isinstance(provider, str):
        raise ConfigError(f"{where}: provider must be a string alias")

    attributes = {
        key: parse_expression(value, f"{where}.{key}")
        for key, value in body.items()
        if key not in META_ARGUMENTS
    }
    return Declaration(
        resource_type=resource_type,
        name=name,
        attributes=attributes,
        count=parse_expression(body["count"], f"{where}.count") if "count" in body else None,
        for_each=parse_expression(body["for_each"], f"{where}.for_each") if "for_each" in body else None,
        depends_on=tuple(parse_address(a) for a in depends_on),
        lifecycle=_parse_lifecycle(body.get("lifecycle"), where),
        provider=provider,
    )


def parse_configuration(data: Any, source: str = "<memory>") -> Configuration:
    """Build a Configuration from an already-loaded YAML document.

    Raises:
        ConfigError: If the document is invalid.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {source}, got {type(data).__name__}")

    try:
        doc = ConfigDocument.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {source}: {e}") from e

    variables = []
    for name, var in doc.variables.items():
        var = var or VariableDocument()
        has_default = "default" in var.model_fields_set
        variables.append(
            VariableDeclaration(
                name=name,
                type=var.type,
                default=var.default if has_default else NO_DEFAULT,
                description=var.description,
            )
        )

    declarations = [
        _parse_resource(resource_type, name, body or {})
        for resource_type, blocks in doc.resources.items()
        for name, body in blocks.items()
    ]

    return Configuration(
        declarations=declarations,
        variables=variables,
        locals={name: parse_expression(value, f"local.{name}") for name, value in doc.locals.items()},
        settings=doc.settings,
    )


# ── Files ───────────────────────────────────────────────────────────


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for converge.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to converge.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def load_configuration(path: Path | None = None) -> Configuration:
    """Load and validate converge.yml.

    Args:
        path: Explicit path to the file. If None, searches upward.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if path is None:
        path = find_config_file()

    if path is None:
        raise ConfigError(f"No {CONFIG_FILE} found. Create one, or specify --config.")

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading configuration from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    config = parse_configuration(data, str(path))
    logger.info(
        "Loaded %s: %d resource(s), %d variable(s), %d local(s)",
        path.name,
        len(config.declarations),
        len(config.variables),
        len(config.locals),
    )
    return config


def config_root(config_path: Path) -> Path:
    """Get the working directory from a config file path."""
    return config_path.parent.resolve()
