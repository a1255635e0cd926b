import json
from pathlib import Path
from typing import List, Sequence, Set, Tuple

from pydantic import TypeAdapter, ValidationError

from .classify import collect_errors
from .models import EnrichedNode, SnapshotRecord
from .utils import atomic_write

ErrorKey = Tuple[str, str, int, int]

_RECORDS = TypeAdapter(List[SnapshotRecord])


class SnapshotError(Exception):
    """Raised when a snapshot file cannot be read or does not validate."""


def error_key(node: EnrichedNode) -> ErrorKey:
    return (str(node.file_path), node.name, node.position.row, node.position.column)


def generate_snapshot(nodes: Sequence[EnrichedNode], path: Path) -> List[EnrichedNode]:
    errors = collect_errors(nodes)
    payload = [SnapshotRecord.from_node(node).model_dump(mode="json") for node in errors]
    atomic_write(path, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
    return errors


def load_snapshot(path: Path) -> List[EnrichedNode]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SnapshotError(f"Failed to read snapshot {path}: {exc}") from exc
    try:
        records = _RECORDS.validate_json(text)
    except ValidationError as exc:
        raise SnapshotError(f"Failed to parse snapshot {path}: {exc}") from exc
    return [record.to_node() for record in records]


def compare_with_snapshot(
    nodes: Sequence[EnrichedNode], path: Path
) -> List[EnrichedNode]:
    """Current error nodes with no (file, name, row, column) match in the snapshot."""
    known: Set[ErrorKey] = {error_key(node) for node in load_snapshot(path)}
    return [node for node in collect_errors(nodes) if error_key(node) not in known]
