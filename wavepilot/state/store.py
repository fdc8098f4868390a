"""Durable node status stores.

Two on-disk formats describe the same kind of work graph: a milestone status
file keyed by milestone number, and a requirement index keyed by slug. Each
adapter translates its format to :class:`~wavepilot.scheduler.dag.Node`
records and back, without merging the formats.

Stores never cache. Every read goes to disk, and every write is a
read-modify-write done under an advisory lock, so status changed by another
process (or by hand) between calls is always seen.
"""

import logging
import re
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..scheduler.dag import Node, NodeId, NodeStatus, sorted_ids
from ..utils.locking import FileLock, atomic_write_json, atomic_write_yaml, read_json, read_yaml

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Status store missing, unreadable or asked about an unknown node."""

    pass


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class NodeRepository(ABC):
    """Read/write access to the durable status of every node in one graph."""

    def __init__(self, path: Path):
        self.path = path
        self.lock_path = path.with_name(path.name + ".lock")

    @abstractmethod
    def _read(self) -> BaseModel:
        """Load and validate the document from disk."""

    @abstractmethod
    def _write(self, document: BaseModel) -> None:
        """Atomically replace the document on disk."""

    @abstractmethod
    def _nodes_from(self, document: BaseModel) -> list[Node]:
        """Translate the document into canonical nodes, sorted by id."""

    @abstractmethod
    def _apply_status(
        self,
        document: BaseModel,
        node_id: NodeId,
        status: NodeStatus,
        completed_at: str | None,
    ) -> None:
        """Set one node's status in the document."""

    def load_nodes(self) -> list[Node]:
        """Read every node with its current status."""
        return self._nodes_from(self._read())

    def get_node(self, node_id: NodeId) -> Node:
        for node in self.load_nodes():
            if node.id == node_id:
                return node
        raise StoreError(f"Unknown node {node_id} in {self.path}")

    def completed_ids(self) -> set[NodeId]:
        return {node.id for node in self.load_nodes() if node.status == NodeStatus.COMPLETE}

    @property
    def feature_branch(self) -> str:
        """Branch recorded in the document, used as the merge target."""
        return self._read().branch

    def mark(self, node_id: NodeId, status: NodeStatus) -> Node:
        """Set a node's status with a locked read-modify-write.

        Marking a node complete stamps ``completed_at``; any other status clears it.

        Raises:
            StoreError: If the document is missing or the node is unknown
        """
        completed_at = _now_iso() if status == NodeStatus.COMPLETE else None
        with FileLock(self.lock_path):
            document = self._read()
            self._apply_status(document, node_id, status, completed_at)
            self._write(document)
            nodes = self._nodes_from(document)

        logger.info(f"Node {node_id} -> {status.value}")
        return next(node for node in nodes if node.id == node_id)

    def _load_file(self, loader) -> dict:
        if not self.path.exists():
            raise StoreError(f"Status file not found: {self.path}")
        try:
            data = loader(self.path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise StoreError(f"Cannot read {self.path}: {e}")
        if not isinstance(data, dict):
            raise StoreError(f"{self.path}: expected a mapping, got {type(data).__name__}")
        return data


def _parse_status(raw: str, node_id: NodeId, path: Path) -> NodeStatus:
    try:
        return NodeStatus(raw)
    except ValueError:
        raise StoreError(f"{path}: node {node_id} has unknown status {raw!r}")


# Milestone status file: .planning/status/<slug>.json


class MilestoneEntry(BaseModel):
    """One milestone in a status file. Unknown keys are kept as-is."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    status: str = "pending"
    completed_at: str | None = Field(default=None, alias="completedAt")
    name: str | None = None
    depends_on: list[int] = Field(default_factory=list, alias="dependsOn")
    description: str | None = None


class MilestoneStatusFile(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    project: str
    slug: str
    branch: str
    created_at: str = Field(alias="createdAt")
    milestones: dict[str, MilestoneEntry] = Field(default_factory=dict)


_MILESTONE_NUMBER = re.compile(r"(\d+)")


def milestone_number(key: str) -> int:
    """Milestone number from a status key such as ``"3"`` or ``"Milestone 3: Auth"``."""
    match = _MILESTONE_NUMBER.search(key)
    if not match:
        raise StoreError(f"Milestone key {key!r} does not contain a number")
    return int(match.group(1))


class MilestoneStatusStore(NodeRepository):
    """Adapter for ``<repo>/.planning/status/<slug>.json``."""

    def __init__(self, repo_root: Path, slug: str):
        super().__init__(repo_root / ".planning" / "status" / f"{slug}.json")
        self.slug = slug

    def _read(self) -> MilestoneStatusFile:
        data = self._load_file(read_json)
        try:
            return MilestoneStatusFile.model_validate(data)
        except ValidationError as e:
            raise StoreError(f"Invalid status file {self.path}: {e}")

    def _write(self, document: MilestoneStatusFile) -> None:
        atomic_write_json(
            self.path,
            document.model_dump(mode="json", by_alias=True, exclude_unset=True, exclude_none=True),
        )

    def _keys_by_number(self, document: MilestoneStatusFile) -> dict[int, str]:
        keys: dict[int, str] = {}
        for key in document.milestones:
            number = milestone_number(key)
            if number in keys:
                raise StoreError(f"{self.path}: milestone {number} appears more than once")
            keys[number] = key
        return keys

    def _nodes_from(self, document: MilestoneStatusFile) -> list[Node]:
        nodes = []
        for number, key in self._keys_by_number(document).items():
            entry = document.milestones[key]
            nodes.append(
                Node(
                    id=number,
                    name=entry.name or key,
                    depends_on=tuple(entry.depends_on),
                    description=entry.description or "",
                    status=_parse_status(entry.status, number, self.path),
                    completed_at=entry.completed_at,
                )
            )
        return sorted(nodes, key=lambda node: node.id)

    def _apply_status(
        self,
        document: MilestoneStatusFile,
        node_id: NodeId,
        status: NodeStatus,
        completed_at: str | None,
    ) -> None:
        key = self._keys_by_number(document).get(node_id)
        if key is None:
            raise StoreError(f"Unknown milestone {node_id} in {self.path}")
        entry = document.milestones[key]
        entry.status = status.value
        entry.completed_at = completed_at


# Requirement index: <graph_dir>/_index.yaml with requirements/<id>.md


class RequirementMeta(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    group: str
    status: str = "pending"
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    priority: int | None = None
    completed_at: str | None = Field(default=None, alias="completedAt")


class GroupDef(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    order: int | None = None
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")


class RequirementIndex(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    project: str
    slug: str
    branch: str
    created_at: str = Field(alias="createdAt")
    groups: dict[str, GroupDef] = Field(default_factory=dict)
    requirements: dict[str, RequirementMeta] = Field(default_factory=dict)


class RequirementIndexStore(NodeRepository):
    """Adapter for ``<graph_dir>/_index.yaml``.

    A group's ``dependsOn`` makes every requirement of the group depend on
    every requirement of the named groups. ``rejected`` requirements are left
    out of the graph entirely. ``discovered`` ones stay in the graph, holding
    back completion, until someone approves them by setting them to pending.
    """

    EXCLUDED_STATUSES = {"rejected"}

    def __init__(self, graph_dir: Path):
        super().__init__(graph_dir / "_index.yaml")
        self.graph_dir = graph_dir

    def _read(self) -> RequirementIndex:
        data = self._load_file(read_yaml)
        try:
            return RequirementIndex.model_validate(data)
        except ValidationError as e:
            raise StoreError(f"Invalid requirement index {self.path}: {e}")

    def _write(self, document: RequirementIndex) -> None:
        atomic_write_yaml(
            self.path,
            document.model_dump(mode="json", by_alias=True, exclude_unset=True, exclude_none=True),
        )

    def _read_requirement_file(self, req_id: str) -> tuple[str, str]:
        """Return ``(title, body)`` of ``requirements/<id>.md`` (empty when absent)."""
        path = self.graph_dir / "requirements" / f"{req_id}.md"
        if not path.exists():
            return "", ""
        text = path.read_text(encoding="utf-8")
        if not text.startswith("---"):
            return "", text.strip()

        parts = text.split("---", 2)
        if len(parts) < 3:
            return "", text.strip()
        try:
            frontmatter = yaml.safe_load(parts[1]) or {}
        except yaml.YAMLError:
            logger.warning(f"Ignoring malformed frontmatter in {path}")
            frontmatter = {}
        title = frontmatter.get("title", "") if isinstance(frontmatter, dict) else ""
        return str(title), parts[2].strip()

    def _nodes_from(self, document: RequirementIndex) -> list[Node]:
        active = {
            req_id: meta
            for req_id, meta in document.requirements.items()
            if meta.status not in self.EXCLUDED_STATUSES
        }

        members: dict[str, list[str]] = {}
        for req_id, meta in active.items():
            members.setdefault(meta.group, []).append(req_id)

        nodes = []
        for req_id, meta in active.items():
            group = document.groups.get(meta.group)
            depends_on = list(meta.depends_on)
            for dep_group in group.depends_on if group else []:
                if dep_group not in document.groups:
                    raise StoreError(
                        f"{self.path}: group {meta.group!r} depends on unknown group {dep_group!r}"
                    )
                depends_on.extend(members.get(dep_group, []))

            title, body = self._read_requirement_file(req_id)
            nodes.append(
                Node(
                    id=req_id,
                    name=title or req_id,
                    depends_on=tuple(sorted_ids(set(depends_on))),
                    description=body,
                    status=_parse_status(meta.status, req_id, self.path),
                    completed_at=meta.completed_at,
                )
            )
        return sorted(nodes, key=lambda node: node.id)

    def _apply_status(
        self,
        document: RequirementIndex,
        node_id: NodeId,
        status: NodeStatus,
        completed_at: str | None,
    ) -> None:
        meta = document.requirements.get(str(node_id))
        if meta is None or meta.status in self.EXCLUDED_STATUSES:
            raise StoreError(f"Unknown requirement {node_id} in {self.path}")
        meta.status = status.value
        meta.completed_at = completed_at
