from typing import Iterable, List, Optional

from .models import EnrichedNode

DEAD_CODE = "dead code"
USELESS_PREFIX = "useless prefix"


def is_dead(node: EnrichedNode) -> bool:
    return node.reference_count == 0


def has_useless_prefix(name: str, parent_name: Optional[str]) -> bool:
    """True when `name` is a case-insensitive prefix of the enclosing name."""
    if parent_name is None:
        return False
    return parent_name.lower().startswith(name.lower())


def count_dead(nodes: Iterable[EnrichedNode]) -> int:
    total = 0
    for node in nodes:
        if is_dead(node):
            total += 1
        total += count_dead(node.children)
    return total


def has_errors(node: EnrichedNode) -> bool:
    if is_dead(node) or node.has_useless_prefix:
        return True
    return any(has_errors(child) for child in node.children)


def error_reasons(node: EnrichedNode) -> List[str]:
    reasons = []
    if is_dead(node):
        reasons.append(DEAD_CODE)
    if node.has_useless_prefix:
        reasons.append(USELESS_PREFIX)
    return reasons


def collect_errors(nodes: Iterable[EnrichedNode]) -> List[EnrichedNode]:
    """Pre-order list of every flagged node, each carrying its full subtree."""
    errors: List[EnrichedNode] = []
    for node in nodes:
        if error_reasons(node):
            errors.append(node)
        errors.extend(collect_errors(node.children))
    return errors
