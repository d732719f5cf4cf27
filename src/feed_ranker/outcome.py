"""
Tagged results for collaborator fetches.

A fetch either succeeds (``Ok``) or falls back to a neutral default
(``Degraded``) while recording why. Callers read ``.value`` in both cases
and collect ``.reason`` from degraded ones for feed metadata.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def degraded(self) -> bool:
        return False


@dataclass(frozen=True)
class Degraded(Generic[T]):
    value: T
    reason: str

    @property
    def degraded(self) -> bool:
        return True


Outcome = Union[Ok[T], Degraded[T]]


def degraded_reasons(*outcomes: Outcome) -> list[str]:
    """Return the reasons of all degraded outcomes, in order."""
    return [o.reason for o in outcomes if isinstance(o, Degraded)]
