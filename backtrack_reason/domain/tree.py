"""Thought tree — the structure explored by tree search.

Every non-root node references an existing parent exactly one level
above it.  A node's value stays None until its evaluation has run.
Nodes are mutated only by the ThoughtTree that owns them, and the tree
only by the search run that built it.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Iterator

from pydantic import BaseModel, Field

from backtrack_reason.domain.errors import NotFoundError
from backtrack_reason.foundation.identifiers import node_id


class TreeNode:
    """A single thought in the tree."""

    __slots__ = (
        "id",
        "parent_id",
        "depth",
        "thought",
        "state",
        "value",
        "children",
        "pruned",
        "metadata",
    )

    def __init__(
        self,
        id: str,
        thought: str,
        *,
        parent_id: str | None = None,
        depth: int = 0,
        state: dict[str, Any] | None = None,
        value: float | None = None,
    ) -> None:
        self.id = id
        self.parent_id = parent_id
        self.depth = depth
        self.thought = thought
        self.state: dict[str, Any] = state or {}
        self.value: float | None = value
        self.children: list[str] = []
        self.pruned: bool = False
        self.metadata: dict[str, Any] = {}

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "depth": self.depth,
            "thought": self.thought,
            "value": self.value,
            "children": list(self.children),
            "pruned": self.pruned,
        }

    def __repr__(self) -> str:
        return f"TreeNode(id={self.id!r}, depth={self.depth}, value={self.value!r})"


class ThoughtTree:
    """Arena of TreeNodes keyed by sequential ids (``node_0`` is the root)."""

    __slots__ = ("_nodes", "_seq", "root_id")

    def __init__(self, root_thought: str, root_state: dict[str, Any] | None = None) -> None:
        self._nodes: dict[str, TreeNode] = {}
        self._seq = 0
        root = TreeNode(self._next_id(), root_thought, state=root_state)
        self._nodes[root.id] = root
        self.root_id: str = root.id

    def _next_id(self) -> str:
        nid = node_id(self._seq)
        self._seq += 1
        return nid

    # ── Mutation ─────────────────────────────────────────────────────────

    def add_child(
        self,
        parent_id: str,
        thought: str,
        *,
        value: float | None = None,
        state: dict[str, Any] | None = None,
    ) -> TreeNode:
        """Attach a new node one level below *parent_id*.

        Raises:
            NotFoundError: If *parent_id* is not in the tree.
        """
        parent = self.get_node(parent_id)
        child = TreeNode(
            self._next_id(),
            thought,
            parent_id=parent.id,
            depth=parent.depth + 1,
            state=state,
            value=value,
        )
        self._nodes[child.id] = child
        parent.children.append(child.id)
        return child

    def set_value(self, node_id: str, value: float) -> None:
        self.get_node(node_id).value = value

    def prune_by_value(self, threshold: float) -> list[str]:
        """Mark every evaluated non-root node below *threshold* as pruned."""
        pruned = []
        for node in self._nodes.values():
            if node.is_root or node.value is None or node.pruned:
                continue
            if node.value < threshold:
                node.pruned = True
                pruned.append(node.id)
        return pruned

    def prune_by_beam_width(self, width: int) -> list[str]:
        """Keep the *width* best children of every node, pruning the rest."""
        pruned = []
        for node in list(self._nodes.values()):
            if len(node.children) <= width:
                continue
            ranked = sorted(
                node.children,
                key=lambda cid: -(self._nodes[cid].value or 0.0),
            )
            for cid in ranked[width:]:
                if not self._nodes[cid].pruned:
                    self._nodes[cid].pruned = True
                    pruned.append(cid)
        return pruned

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def root(self) -> TreeNode:
        return self._nodes[self.root_id]

    @property
    def size(self) -> int:
        return len(self._nodes)

    @property
    def max_depth(self) -> int:
        return max(node.depth for node in self._nodes.values())

    def get_node(self, node_id: str) -> TreeNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NotFoundError(node_id) from None

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def children(self, node_id: str) -> list[TreeNode]:
        return [self._nodes[cid] for cid in self.get_node(node_id).children]

    def parent(self, node_id: str) -> TreeNode | None:
        node = self.get_node(node_id)
        return self._nodes[node.parent_id] if node.parent_id is not None else None

    def path(self, node_id: str) -> list[TreeNode]:
        """Nodes from the root down to *node_id*, inclusive."""
        chain = []
        node: TreeNode | None = self.get_node(node_id)
        while node is not None:
            chain.append(node)
            node = self._nodes[node.parent_id] if node.parent_id is not None else None
        chain.reverse()
        return chain

    def bfs(self) -> Iterator[TreeNode]:
        queue = deque([self.root])
        while queue:
            node = queue.popleft()
            yield node
            queue.extend(self._nodes[cid] for cid in node.children)

    def dfs(self) -> Iterator[TreeNode]:
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(self._nodes[cid] for cid in reversed(node.children))

    def leaves(self) -> list[TreeNode]:
        return [node for node in self.bfs() if node.is_leaf]

    def nodes(self) -> list[TreeNode]:
        return list(self._nodes.values())

    def to_dict(self) -> dict[str, Any]:
        return {"root_id": self.root_id, "nodes": [n.to_dict() for n in self.bfs()]}


class NodeContext(BaseModel):
    """What an injected thought or evaluation function sees about a node.

    For evaluation the context describes the prospective child: its depth
    and the thoughts on the path that leads to it.
    """

    problem: str
    node_id: str | None = None
    depth: int = Field(default=0, ge=0)
    thought: str = ""
    path: tuple[str, ...] = ()
    state: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}
