"""Hydration state carried by entities loaded through a session."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from odmkit.session import Session

STATE_KEY = "__odm_state__"


@dataclass(slots=True)
class Loaded:
    """All scalar fields are materialized.

    ``unpopulated`` names the back-references that were not joined; reading
    one of them fails until it is assigned or joined.
    """

    session: Session | None = None
    unpopulated: set[str] = field(default_factory=set)


@dataclass(slots=True, frozen=True)
class Unloaded:
    """Only the primary key is known."""

    primary_key: Any
    session: Session | None = None


def get_state(instance: Any) -> Loaded | Unloaded | None:
    """Return the hydration state, or None for instances built by user code."""
    return instance.__dict__.get(STATE_KEY)


def set_state(instance: Any, state: Loaded | Unloaded | None) -> None:
    if state is None:
        instance.__dict__.pop(STATE_KEY, None)
    else:
        instance.__dict__[STATE_KEY] = state


def is_populated(instance: Any) -> bool:
    """Check whether all scalar fields of an instance can be read."""
    return not isinstance(get_state(instance), Unloaded)
