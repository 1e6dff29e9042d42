"""Snapshot, StateStack and StateDiff — immutable views of reasoning state.

A ReasoningState is an opaque key/value mapping owned by whichever
component holds the active pointer.  A Snapshot freezes a deep copy of
one so later mutation of the live state can never reach it.

The StateStack is LIFO: its top is always the most recently captured
branch point.  Every operation returns a new stack.
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from backtrack_reason.domain.errors import EmptyStackError
from backtrack_reason.foundation.clock import utc_now
from backtrack_reason.foundation.identifiers import new_snapshot_id

ReasoningState = dict[str, Any]


class Snapshot(BaseModel):
    """A frozen copy of a reasoning state taken at a branch point."""

    id: str = Field(default_factory=new_snapshot_id)
    state: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    @classmethod
    def of(cls, state: ReasoningState, metadata: dict[str, Any] | None = None) -> Snapshot:
        """Build a snapshot from deep copies of *state* and *metadata*."""
        return cls(
            state=copy.deepcopy(dict(state)),
            metadata=copy.deepcopy(dict(metadata or {})),
            created_at=utc_now(),
        )


class StateStack(BaseModel):
    """Ordered LIFO sequence of snapshots; the last element is the top."""

    snapshots: tuple[Snapshot, ...] = ()

    model_config = {"frozen": True}

    @property
    def size(self) -> int:
        return len(self.snapshots)

    @property
    def is_empty(self) -> bool:
        return not self.snapshots

    def push(self, snapshot: Snapshot) -> StateStack:
        return StateStack(snapshots=(*self.snapshots, snapshot))

    def pop(self) -> tuple[Snapshot, StateStack]:
        """Remove the top snapshot.

        Raises:
            EmptyStackError: If the stack holds no snapshots.
        """
        if not self.snapshots:
            raise EmptyStackError()
        return self.snapshots[-1], StateStack(snapshots=self.snapshots[:-1])

    def peek(self) -> Snapshot | None:
        return self.snapshots[-1] if self.snapshots else None

    def __len__(self) -> int:
        return len(self.snapshots)


class ValueChange(BaseModel):
    """Old and new value of a key present on both sides of a diff."""

    old: Any = None
    new: Any = None

    model_config = {"frozen": True}


class StateDiff(BaseModel):
    """Key-level difference between two reasoning states.

    ``added`` holds keys only in the newer state, ``removed`` keys only in
    the older one, ``changed`` keys whose values differ.
    """

    added: dict[str, Any] = Field(default_factory=dict)
    removed: dict[str, Any] = Field(default_factory=dict)
    changed: dict[str, ValueChange] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    def inverted(self) -> StateDiff:
        """The diff that undoes this one."""
        return StateDiff(
            added=dict(self.removed),
            removed=dict(self.added),
            changed={k: ValueChange(old=c.new, new=c.old) for k, c in self.changed.items()},
        )
