from typing import List, Optional, Sequence

from .classify import error_reasons, has_errors
from .models import EnrichedNode

FAILED_MARK = "💩"
PASSED_MARK = "✅"
SEPARATOR = "-" * 80


def build_report(nodes: Sequence[EnrichedNode], show_passed: bool = False) -> str:
    """Render one file's forest; empty when nothing is worth showing."""
    if not nodes:
        return ""
    sections = [
        section
        for section in (_render_node(node, show_passed, 0) for node in nodes)
        if section is not None
    ]
    if not sections:
        return ""
    header = str(nodes[0].file_path)
    return f"{header}\n" + "\n".join(sections) + f"\n{SEPARATOR}\n"


def format_error(node: EnrichedNode) -> str:
    return (
        f"{node.file_path}:{node.position.row}:{node.position.column} :: "
        f"{node.name} ({', '.join(error_reasons(node))})"
    )


def _render_node(node: EnrichedNode, show_passed: bool, depth: int) -> Optional[str]:
    if not show_passed and not has_errors(node):
        return None
    reasons = error_reasons(node)
    status = FAILED_MARK if reasons else PASSED_MARK
    lines: List[str] = [
        f"{chr(9) * depth}[{status}] {node.name}:{node.position.row}:"
        f"{node.position.column} :: ({', '.join(reasons)})"
    ]
    for child in node.children:
        rendered = _render_node(child, show_passed, depth + 1)
        if rendered is not None:
            lines.append(rendered)
    return "\n".join(lines)
