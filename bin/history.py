"""Sitesmith version history: a branching tree of accepted documents.

Each accepted generation becomes a Version, appended as a child of the
version that was current when the request started.  The tree is an arena:
one dict of Versions keyed by id, with parent/child edges stored as ids, so
lookup, undo and selection never walk the tree.

A Workspace pairs one tree with the per-session generation flag, prompt log
and live preview; WorkspaceStore keeps them in process memory.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from errors import GenerationInProgress

BUSY_MESSAGE = "Please wait for the AI to finish working."
NOTHING_TO_UNDO = "No previous version available"


def utc_now_iso() -> str:
    """Return the current UTC timestamp in canonical ISO-8601 Zulu format."""
    return datetime.now(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Version:
    """Immutable document snapshot.

    ``children`` is the only field that grows after creation; it is owned by
    the tree and appended to in creation order.
    """
    id: str
    timestamp: str
    html: str
    prompt: str = ""
    parent_id: Optional[str] = None
    children: List[str] = field(default_factory=list, compare=False)

    @property
    def label(self) -> str:
        """Short display label: quoted prompt prefix, or "Initial Version"."""
        if not self.prompt:
            return "Initial Version"
        suffix = "..." if len(self.prompt) > 25 else ""
        return f'"{self.prompt[:25]}{suffix}"'


class VersionTree:
    """Arena of Versions with a single current pointer."""

    def __init__(self, initial_html: str):
        root = Version(id=uuid.uuid4().hex, timestamp=utc_now_iso(), html=initial_html)
        self._nodes: Dict[str, Version] = {root.id: root}
        self.root_id = root.id
        self.current_id = root.id

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, version_id: object) -> bool:
        return version_id in self._nodes

    @property
    def root(self) -> Version:
        return self._nodes[self.root_id]

    @property
    def current(self) -> Version:
        return self._nodes[self.current_id]

    def get(self, version_id: str) -> Version:
        """Return the Version for *version_id*; KeyError when unknown."""
        return self._nodes[version_id]

    def children_of(self, version_id: str) -> List[Version]:
        return [self._nodes[cid] for cid in self._nodes[version_id].children]

    def parent_of(self, version_id: str) -> Optional[Version]:
        parent_id = self._nodes[version_id].parent_id
        return self._nodes[parent_id] if parent_id is not None else None

    def add_version(self, prompt: str, html: str, parent_id: str | None = None) -> Version:
        """Append a new Version under *parent_id* (default: current) and select it."""
        parent = self._nodes[parent_id if parent_id is not None else self.current_id]
        version = Version(
            id=uuid.uuid4().hex,
            timestamp=utc_now_iso(),
            html=html,
            prompt=prompt,
            parent_id=parent.id,
        )
        self._nodes[version.id] = version
        parent.children.append(version.id)
        self.current_id = version.id
        return version

    def undo_to_previous(self) -> Optional[Version]:
        """Move current to its parent; None (and no change) at the root."""
        parent = self.parent_of(self.current_id)
        if parent is None:
            return None
        self.current_id = parent.id
        return parent

    def select_version(self, version_id: str) -> Version:
        """Make any version current, wherever it sits in the tree."""
        version = self._nodes[version_id]
        self.current_id = version.id
        return version

    def ancestors(self, version_id: str) -> List[Version]:
        """Root-to-node path (inclusive)."""
        chain = []
        node: Optional[Version] = self._nodes[version_id]
        while node is not None:
            chain.append(node)
            node = self._nodes[node.parent_id] if node.parent_id is not None else None
        chain.reverse()
        return chain

    def iter_depth_first(self) -> Iterator[Version]:
        """Pre-order walk, children in insertion order."""
        stack = [self.root_id]
        while stack:
            version = self._nodes[stack.pop()]
            yield version
            stack.extend(reversed(version.children))

    def to_dict(self, *, include_html: bool = False) -> Dict[str, Any]:
        """Nested display form of the tree, built without recursion."""
        built: Dict[str, Dict[str, Any]] = {}
        for version in self.iter_depth_first():
            node = {
                "id": version.id,
                "timestamp": version.timestamp,
                "prompt": version.prompt,
                "label": version.label,
                "current": version.id == self.current_id,
                "children": [],
            }
            if include_html:
                node["html"] = version.html
            built[version.id] = node
            if version.parent_id is not None:
                built[version.parent_id]["children"].append(node)
        return built[self.root_id]


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------
class Workspace:
    """One builder session: version tree, prompt log, generation flag, live preview."""

    def __init__(self, initial_html: str, workspace_id: str | None = None):
        self.id = workspace_id or uuid.uuid4().hex
        self.tree = VersionTree(initial_html)
        self.prompts: List[str] = []
        self.generating = False
        self.preview = initial_html

    @property
    def html(self) -> str:
        return self.tree.current.html

    @property
    def previous_prompt(self) -> str:
        return self.tree.current.prompt

    def _ensure_idle(self) -> None:
        if self.generating:
            raise GenerationInProgress(BUSY_MESSAGE)

    def begin_generation(self, prompt: str) -> str:
        """Mark a generation in flight; returns the base version id."""
        self.generating = True
        self.prompts.append(prompt)
        return self.tree.current_id

    def finish_generation(self, prompt: str, html: str, base_id: str) -> Optional[Version]:
        """Record the accepted document (if any) under *base_id* and clear the flag."""
        self.generating = False
        if not html:
            return None
        version = self.tree.add_version(prompt, html, parent_id=base_id)
        self.preview = version.html
        return version

    def abort_generation(self) -> None:
        self.generating = False
        self.preview = self.tree.current.html

    def undo(self) -> Optional[Version]:
        self._ensure_idle()
        version = self.tree.undo_to_previous()
        if version is not None:
            self.preview = version.html
        return version

    def select(self, version_id: str) -> Version:
        self._ensure_idle()
        version = self.tree.select_version(version_id)
        self.preview = version.html
        return version

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "current": self.tree.current_id,
            "generating": self.generating,
            "size": len(self.tree),
            "prompts": list(self.prompts),
            "tree": self.tree.to_dict(),
        }


class WorkspaceStore:
    """Process-memory registry of workspaces (lost on restart)."""

    def __init__(self):
        self._items: Dict[str, Workspace] = {}

    def create(self, initial_html: str) -> Workspace:
        workspace = Workspace(initial_html)
        self._items[workspace.id] = workspace
        return workspace

    def get(self, workspace_id: str | None) -> Optional[Workspace]:
        if not workspace_id:
            return None
        return self._items.get(workspace_id)

    def __len__(self) -> int:
        return len(self._items)
