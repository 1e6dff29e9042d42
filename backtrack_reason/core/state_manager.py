"""StateManager — snapshots, the rollback stack, diffs and persistence.

Design principles:
    1. capture() and restore() deep-copy, so neither the live state nor a
       stored snapshot can be changed through the other.
    2. Stack operations return new stacks; nothing is mutated in place.
    3. Persistence goes through an injected KeyValueStore.  There is no
       process-wide storage.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Mapping

import pydantic
from pydantic_core import PydanticSerializationError

from backtrack_reason.domain.errors import PersistenceError
from backtrack_reason.domain.snapshot import (
    ReasoningState,
    Snapshot,
    StateDiff,
    StateStack,
    ValueChange,
)
from backtrack_reason.store.kv_store import InMemoryKeyValueStore, KeyValueStore

logger = logging.getLogger(__name__)


def _as_state(value: Snapshot | Mapping[str, Any]) -> Mapping[str, Any]:
    return value.state if isinstance(value, Snapshot) else value


class StateManager:
    """Captures, restores, compares and persists reasoning state."""

    def __init__(self, store: KeyValueStore | None = None, key_prefix: str = "state_stack:") -> None:
        self._store: KeyValueStore = store if store is not None else InMemoryKeyValueStore()
        self._key_prefix = key_prefix

    @property
    def store(self) -> KeyValueStore:
        return self._store

    # ── Snapshots ────────────────────────────────────────────────────────

    def capture(self, state: ReasoningState, metadata: dict[str, Any] | None = None) -> Snapshot:
        """Freeze a deep copy of *state*.  The input is never mutated."""
        snapshot = Snapshot.of(state, metadata)
        logger.debug("Captured snapshot %s (%d keys)", snapshot.id, len(snapshot.state))
        return snapshot

    def restore(self, snapshot: Snapshot) -> ReasoningState:
        """Return a fresh copy of the stored state.

        Every call yields an equal, independent dict, so restoring the same
        snapshot twice gives identical results.
        """
        return copy.deepcopy(dict(snapshot.state))

    # ── Stack ────────────────────────────────────────────────────────────

    @staticmethod
    def new_stack() -> StateStack:
        return StateStack()

    @staticmethod
    def push(stack: StateStack, snapshot: Snapshot) -> StateStack:
        return stack.push(snapshot)

    @staticmethod
    def pop(stack: StateStack) -> tuple[Snapshot, StateStack]:
        return stack.pop()

    @staticmethod
    def peek(stack: StateStack) -> Snapshot | None:
        return stack.peek()

    # ── Diffs ────────────────────────────────────────────────────────────

    @staticmethod
    def compare(
        a: Snapshot | Mapping[str, Any],
        b: Snapshot | Mapping[str, Any],
    ) -> StateDiff:
        """Key-level difference going from *a* to *b*.

        compare(a, a) is empty, and compare(b, a) is compare(a, b) inverted.
        """
        old, new = _as_state(a), _as_state(b)
        added = {k: copy.deepcopy(new[k]) for k in new if k not in old}
        removed = {k: copy.deepcopy(old[k]) for k in old if k not in new}
        changed = {
            k: ValueChange(old=copy.deepcopy(old[k]), new=copy.deepcopy(new[k]))
            for k in old
            if k in new and old[k] != new[k]
        }
        return StateDiff(added=added, removed=removed, changed=changed)

    def create_diff(self, current: Snapshot | Mapping[str, Any], previous: Snapshot | Mapping[str, Any]) -> StateDiff:
        """Diff that takes *previous* to *current*."""
        return self.compare(previous, current)

    @staticmethod
    def apply_diff(state: Mapping[str, Any], diff: StateDiff) -> ReasoningState:
        """Apply *diff* to a copy of *state*."""
        result = copy.deepcopy(dict(state))
        for key in diff.removed:
            result.pop(key, None)
        for key, value in diff.added.items():
            result[key] = copy.deepcopy(value)
        for key, change in diff.changed.items():
            result[key] = copy.deepcopy(change.new)
        return result

    @staticmethod
    def merge(a: Snapshot | Mapping[str, Any], b: Snapshot | Mapping[str, Any]) -> ReasoningState:
        """Shallow-merge two states; keys of *b* win."""
        merged = copy.deepcopy(dict(_as_state(a)))
        merged.update(copy.deepcopy(dict(_as_state(b))))
        return merged

    # ── Persistence ──────────────────────────────────────────────────────

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def persist(self, stack: StateStack, key: str) -> None:
        """Serialise *stack* and store it under *key*.

        Raises:
            PersistenceError: If a snapshot holds a value JSON cannot carry.
        """
        try:
            payload = stack.model_dump_json().encode("utf-8")
        except (PydanticSerializationError, TypeError, ValueError) as exc:
            raise PersistenceError(key, str(exc)) from exc
        await self._store.put(self._key(key), payload)
        logger.info("Persisted state stack '%s' (%d snapshots)", key, stack.size)

    async def load(self, key: str) -> StateStack:
        """Load the stack stored under *key*.

        Raises:
            NotFoundError: If nothing was ever persisted under *key*.
            PersistenceError: If the stored bytes are not a valid stack.
        """
        payload = await self._store.get(self._key(key))
        try:
            stack = StateStack.model_validate_json(payload)
        except pydantic.ValidationError as exc:
            raise PersistenceError(key, str(exc)) from exc
        logger.debug("Loaded state stack '%s' (%d snapshots)", key, stack.size)
        return stack

    async def delete(self, key: str) -> None:
        await self._store.delete(self._key(key))
        logger.debug("Deleted state stack '%s'", key)
