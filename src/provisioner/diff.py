"""Add/remove deltas between desired and observed collections."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class DeltaSet:
    """Elements to add and remove, each sorted for a stable wire order."""

    to_add: tuple[str, ...] = ()
    to_remove: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove

    def __bool__(self) -> bool:
        return not self.is_empty


@dataclass(frozen=True)
class TagDelta:
    """Tags to create or overwrite, and tag keys to delete."""

    to_set: dict[str, str] = field(default_factory=dict)
    to_remove: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.to_set and not self.to_remove


def compute_delta(desired: Iterable[str] | None, observed: Iterable[str] | None) -> DeltaSet:
    """Compute the minimal add/remove instruction turning observed into desired.

    None is treated as an empty collection.
    """
    desired_set = set(desired or ())
    observed_set = set(observed or ())
    return DeltaSet(
        to_add=tuple(sorted(desired_set - observed_set)),
        to_remove=tuple(sorted(observed_set - desired_set)),
    )


def apply_delta(
    request: MutableMapping[str, Any], delta: DeltaSet, add_key: str, remove_key: str
) -> None:
    """Write the non-empty halves of a delta into a request payload.

    Some APIs reject empty modification lists, so an empty half is never sent.
    """
    if delta.to_add:
        request[add_key] = list(delta.to_add)
    if delta.to_remove:
        request[remove_key] = list(delta.to_remove)


def compute_tag_delta(old: Mapping[str, str] | None, new: Mapping[str, str] | None) -> TagDelta:
    old = old or {}
    new = new or {}
    return TagDelta(
        to_set={k: v for k, v in sorted(new.items()) if old.get(k) != v},
        to_remove=tuple(sorted(set(old) - set(new))),
    )


def _normalize(value: Any) -> Any:
    if isinstance(value, (set, frozenset, list, tuple)):
        try:
            return frozenset(value)
        except TypeError:
            # Unhashable members (e.g. grant dicts) keep their order
            return list(value)
    return value


def changed_fields(
    desired: Mapping[str, Any], observed: Mapping[str, Any], fields: Iterable[str]
) -> set[str]:
    """Return the fields whose desired value is set and differs from observed.

    Collection values are compared as sets. Unset (None) desired values never
    count as a change, which lets the remote side own optional computed fields.
    """
    changed: set[str] = set()
    for name in fields:
        want = desired.get(name)
        if want is None:
            continue
        have = observed.get(name)
        if have is None and isinstance(want, (set, frozenset, list, tuple, dict)):
            have = type(want)()
        if _normalize(want) != _normalize(have):
            changed.add(name)
    return changed
