"""
Common package for the treemap backend.

Shared constants, parameter models and operation reports.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "OpReport",
    "TreemapParams",
    "load_treemap_params",
    "constants",
]

_LAZY_ATTRS: dict[str, tuple[str, str | None]] = {
    "OpReport": ("treemap_slam.common.op_report", "OpReport"),
    "TreemapParams": ("treemap_slam.common.param_models", "TreemapParams"),
    "load_treemap_params": ("treemap_slam.common.param_models", "load_treemap_params"),
    # Expose as submodule, but do not eagerly import it at package import time.
    "constants": ("treemap_slam.common.constants", None),
}


def __getattr__(name: str) -> Any:
    target = _LAZY_ATTRS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    module = import_module(module_name)
    return module if attr_name is None else getattr(module, attr_name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(_LAZY_ATTRS.keys()))
