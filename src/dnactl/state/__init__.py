"""Instance registry backed by per-instance directories."""
from __future__ import annotations

from .registry import (
    CorruptInstanceError,
    InstanceNotFoundError,
    InstanceRegistry,
    RegistryEntry,
    StateRegistryError,
)

__all__ = [
    "CorruptInstanceError",
    "InstanceNotFoundError",
    "InstanceRegistry",
    "RegistryEntry",
    "StateRegistryError",
]
