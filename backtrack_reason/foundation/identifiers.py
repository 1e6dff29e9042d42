"""ID generation for snapshots and tree nodes."""

from __future__ import annotations

from uuid import uuid4


def new_snapshot_id() -> str:
    """Snapshot ids look like ``snap_`` followed by 16 hex characters."""
    return f"snap_{uuid4().hex[:16]}"


def node_id(seq: int) -> str:
    """Tree node ids are sequential per tree so search runs are reproducible."""
    return f"node_{seq}"
