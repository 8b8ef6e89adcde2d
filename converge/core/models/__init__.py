"""
Domain models for the reconciliation engine.

All models are re-exported here for convenient access:

    from converge.core.models import Declaration, InstanceAddress, StateDocument
"""

from converge.core.models.address import InstanceAddress, parse_address
from converge.core.models.declaration import (
    NO_DEFAULT,
    Configuration,
    Counted,
    Declaration,
    EachOver,
    LifecyclePolicy,
    Single,
    VariableDeclaration,
)
from converge.core.models.expressions import (
    CountIndex,
    Deferred,
    EachKey,
    EachValue,
    Format,
    Known,
    ListExpr,
    Literal,
    LocalRef,
    MapExpr,
    ResourceRef,
    SetExpr,
    VarRef,
)
from converge.core.models.settings import EngineSettings
from converge.core.models.state import (
    DeposedObject,
    LifecycleSnapshot,
    StateDocument,
    StateRecord,
)

__all__ = [
    # address.py
    "InstanceAddress",
    "parse_address",
    # declaration.py
    "NO_DEFAULT",
    "Configuration",
    "Counted",
    "Declaration",
    "EachOver",
    "LifecyclePolicy",
    "Single",
    "VariableDeclaration",
    # expressions.py
    "CountIndex",
    "Deferred",
    "EachKey",
    "EachValue",
    "Format",
    "Known",
    "ListExpr",
    "Literal",
    "LocalRef",
    "MapExpr",
    "ResourceRef",
    "SetExpr",
    "VarRef",
    # settings.py
    "EngineSettings",
    # state.py
    "DeposedObject",
    "LifecycleSnapshot",
    "StateDocument",
    "StateRecord",
]
