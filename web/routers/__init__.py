"""Billing API routers, imported on first access."""

from __future__ import annotations

from importlib import import_module
from types import ModuleType
from typing import Dict, Iterator

from fastapi import APIRouter

# Mount order matters for the OpenAPI tag listing.
_ROUTER_MODULES = (
    "billing",
    "webhooks",
    "internal",
    "health",
)

__all__ = [*_ROUTER_MODULES, "iter_routers"]

_loaded: Dict[str, ModuleType] = {}


def _load(name: str) -> ModuleType:
    module = _loaded.get(name)
    if module is None:
        module = _loaded[name] = import_module(f".{name}", __name__)
    return module


def iter_routers() -> Iterator[APIRouter]:
    for name in _ROUTER_MODULES:
        yield _load(name).router


def __getattr__(name: str) -> ModuleType:
    if name in _ROUTER_MODULES:
        return _load(name)
    raise AttributeError(name)
