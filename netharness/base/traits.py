"""
netharness/base/traits.py
Named, indexed properties a step offers to other steps.

A step builds a TraitTable on demand from its current state. Other steps
reach it through the interpreter by label and read a value by trait name,
without knowing the offering step's class. Values are borrowed: the reader
must not release or mutate what it gets back.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Dict, Iterator, Optional, Tuple

from netharness.base.exceptions import NoSuchTraitError


class TraitTable:
    """Ordered (name, index) -> value table."""

    def __init__(self, label: Optional[str] = None):
        self.label = label
        self._entries: Dict[Tuple[str, int], Any] = {}

    def add(self, name: str, value: Any, index: int = 0) -> "TraitTable":
        """Offer `value` under `name`/`index`. Returns self for chaining."""
        if isinstance(value, dict):
            value = MappingProxyType(value)
        self._entries[(name, index)] = value
        return self

    def get(self, name: str, index: int = 0) -> Any:
        try:
            return self._entries[(name, index)]
        except KeyError:
            raise NoSuchTraitError(name, index, label=self.label) from None

    def has(self, name: str, index: int = 0) -> bool:
        return (name, index) in self._entries

    def names(self) -> Iterator[str]:
        seen = set()
        for name, _ in self._entries:
            if name not in seen:
                seen.add(name)
                yield name

    def __len__(self) -> int:
        return len(self._entries)


def get_trait(step: Any, name: str, index: int = 0) -> Any:
    """Read a trait from any step-like object, raising NoSuchTraitError."""
    return step.traits(name, index)


def probe_trait(step: Any, name: str, index: int = 0, default: Any = None) -> Any:
    """Like get_trait, but returns `default` when the trait is absent."""
    try:
        return step.traits(name, index)
    except NoSuchTraitError:
        return default
