from typing import Callable, Dict, Iterator, List, Optional, Sequence

import tree_sitter_javascript
import tree_sitter_python
import tree_sitter_typescript
from tree_sitter import Language, Node, Parser

from .models import MatchedNode, NodeTarget, Position

_GRAMMARS: Dict[str, Callable[[], object]] = {
    "typescript": tree_sitter_typescript.language_typescript,
    "tsx": tree_sitter_typescript.language_tsx,
    "javascript": tree_sitter_javascript.language,
    "python": tree_sitter_python.language,
}


class ParseError(Exception):
    """Raised when the grammar cannot build a syntax tree for a source."""


def language_for_grammar(grammar: str) -> Language:
    loader = _GRAMMARS.get(grammar.lower())
    if loader is None:
        raise ValueError(
            f"Unsupported grammar '{grammar}'; expected one of {', '.join(_GRAMMARS)}"
        )
    return Language(loader())


def _iter_preorder(root: Node) -> Iterator[Node]:
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


def _iter_descendants(root: Node) -> Iterator[Node]:
    stack = list(reversed(root.children))
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


class SyntaxMatcher:
    """
    Collects the declarations selected by a `NodeTarget` tree.

    Top-level targets are matched anywhere in the document and returned as a
    flat forest in document pre-order. Child targets are matched only among
    strict descendants of their parent match.
    """

    def __init__(self, grammar: str, targets: Sequence[NodeTarget]) -> None:
        self.grammar = grammar
        self.targets = list(targets)
        self._parser = Parser(language_for_grammar(grammar))

    def match(self, source: str) -> List[MatchedNode]:
        data = source.encode("utf-8")
        try:
            tree = self._parser.parse(data)
        except ValueError as exc:
            raise ParseError(f"{self.grammar} parser failed: {exc}") from exc
        if tree is None:
            raise ParseError(f"{self.grammar} parser produced no tree")
        matches: List[MatchedNode] = []
        for node in _iter_preorder(tree.root_node):
            matches.extend(self._match_node(node, self.targets, data))
        return matches

    def _match_node(
        self, node: Node, targets: Sequence[NodeTarget], data: bytes
    ) -> List[MatchedNode]:
        matches = []
        for target in targets:
            if target.node_kind != node.type:
                continue
            matched = self._build_match(node, target, data)
            if matched is not None:
                matches.append(matched)
        return matches

    def _build_match(
        self, node: Node, target: NodeTarget, data: bytes
    ) -> Optional[MatchedNode]:
        name_node = _resolve_name_node(node, target.reference_child_kind)
        if name_node is None:
            return None
        children: List[MatchedNode] = []
        if target.children:
            for descendant in _iter_descendants(node):
                children.extend(self._match_node(descendant, target.children, data))
        row, column = name_node.start_point
        return MatchedNode(
            kind=node.type,
            name=data[name_node.start_byte : name_node.end_byte]
            .decode("utf-8", errors="replace")
            .strip(),
            position=Position(row=row, column=column),
            children=children,
        )


def _resolve_name_node(node: Node, kind: Optional[str]) -> Optional[Node]:
    if kind is None:
        return node
    for candidate in _iter_preorder(node):
        if candidate.type == kind:
            return candidate
    return None
