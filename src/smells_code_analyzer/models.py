from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class NodeTarget:
    """One entry of the `referenceNodes` tree: which syntax nodes to collect."""

    node_kind: str
    reference_child_kind: Optional[str] = None
    children: List["NodeTarget"] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["NodeTarget"]:
        if not isinstance(raw, dict):
            return None
        node_kind = raw.get("type")
        if not isinstance(node_kind, str) or not node_kind:
            return None
        ref_type = raw.get("refType")
        children_raw = raw.get("children") or []
        children = [
            child
            for child in (cls.from_raw(item) for item in children_raw)
            if child is not None
        ]
        return cls(
            node_kind=node_kind,
            reference_child_kind=ref_type if isinstance(ref_type, str) else None,
            children=children,
        )


@dataclass(frozen=True)
class Position:
    row: int
    column: int


@dataclass
class MatchedNode:
    kind: str
    name: str
    position: Position
    children: List["MatchedNode"] = field(default_factory=list)


@dataclass
class EnrichedNode:
    kind: str
    name: str
    position: Position
    file_path: Path
    reference_count: int
    has_useless_prefix: bool
    children: List["EnrichedNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return SnapshotRecord.from_node(self).model_dump(mode="json")


class SnapshotPosition(BaseModel):
    row: int = Field(ge=0)
    column: int = Field(ge=0)


class SnapshotRecord(BaseModel):
    node_type: str
    name: str
    start_position: SnapshotPosition
    file_path: str
    references: int = Field(ge=0)
    parent_name_prefix: bool
    children: List["SnapshotRecord"] = Field(default_factory=list)

    @classmethod
    def from_node(cls, node: EnrichedNode) -> "SnapshotRecord":
        return cls(
            node_type=node.kind,
            name=node.name,
            start_position=SnapshotPosition(
                row=node.position.row, column=node.position.column
            ),
            file_path=str(node.file_path),
            references=node.reference_count,
            parent_name_prefix=node.has_useless_prefix,
            children=[cls.from_node(child) for child in node.children],
        )

    def to_node(self) -> EnrichedNode:
        return EnrichedNode(
            kind=self.node_type,
            name=self.name,
            position=Position(
                row=self.start_position.row, column=self.start_position.column
            ),
            file_path=Path(self.file_path),
            reference_count=self.references,
            has_useless_prefix=self.parent_name_prefix,
            children=[child.to_node() for child in self.children],
        )


SnapshotRecord.model_rebuild()
