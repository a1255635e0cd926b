import pytest

from smells_code_analyzer.models import NodeTarget, Position
from smells_code_analyzer.syntax import ParseError, SyntaxMatcher, language_for_grammar


def targets(*raw: dict) -> list[NodeTarget]:
    return [NodeTarget.from_raw(item) for item in raw]


INTERFACE = {"type": "interface_declaration", "refType": "type_identifier"}
CLASS_WITH_METHODS = {
    "type": "class_declaration",
    "refType": "type_identifier",
    "children": [{"type": "method_definition", "refType": "property_identifier"}],
}


def test_interface_name_position_is_name_token() -> None:
    matcher = SyntaxMatcher("typescript", targets(INTERFACE))
    matches = matcher.match("interface Foo {\n  bar: string;\n}\n")
    assert len(matches) == 1
    assert matches[0].kind == "interface_declaration"
    assert matches[0].name == "Foo"
    assert matches[0].position == Position(row=0, column=10)
    assert matches[0].children == []


def test_class_children_are_nested_methods() -> None:
    source = "class Foobar {\n  foo() {}\n  bar() {}\n}\n"
    matcher = SyntaxMatcher("typescript", targets(CLASS_WITH_METHODS))
    matches = matcher.match(source)
    assert [m.name for m in matches] == ["Foobar"]
    assert matches[0].position == Position(row=0, column=6)
    children = matches[0].children
    assert [(c.name, c.position) for c in children] == [
        ("foo", Position(row=1, column=2)),
        ("bar", Position(row=2, column=2)),
    ]
    assert all(c.children == [] for c in children)


def test_forest_is_in_document_order() -> None:
    source = "interface A {}\nclass B {}\ninterface C {}\n"
    matcher = SyntaxMatcher("typescript", targets(INTERFACE, CLASS_WITH_METHODS))
    assert [m.name for m in matcher.match(source)] == ["A", "B", "C"]


def test_unresolved_reference_child_yields_no_match() -> None:
    matcher = SyntaxMatcher(
        "typescript",
        targets({"type": "interface_declaration", "refType": "no_such_kind"}),
    )
    assert matcher.match("interface Foo {}") == []


def test_node_never_matches_as_its_own_child() -> None:
    spec = {
        "type": "class_declaration",
        "refType": "type_identifier",
        "children": [{"type": "class_declaration", "refType": "type_identifier"}],
    }
    matches = SyntaxMatcher("typescript", targets(spec)).match("class Foo {}")
    assert len(matches) == 1
    assert matches[0].children == []


def test_multiple_specs_for_same_kind_match_independently() -> None:
    matcher = SyntaxMatcher(
        "typescript",
        targets(INTERFACE, {"type": "interface_declaration", "refType": "type_identifier"}),
    )
    assert [m.name for m in matcher.match("interface Foo {}")] == ["Foo", "Foo"]


def test_without_ref_type_name_is_node_text() -> None:
    matcher = SyntaxMatcher("typescript", targets({"type": "type_identifier"}))
    matches = matcher.match("interface Foo {}")
    assert [(m.name, m.position) for m in matches] == [("Foo", Position(0, 10))]


def test_first_preorder_descendant_names_the_match() -> None:
    matcher = SyntaxMatcher(
        "typescript",
        targets({"type": "class_declaration", "refType": "property_identifier"}),
    )
    matches = matcher.match("class Foo {\n  first() {}\n  second() {}\n}\n")
    assert [m.name for m in matches] == ["first"]


def test_python_grammar() -> None:
    matcher = SyntaxMatcher(
        "python",
        targets({"type": "function_definition", "refType": "identifier"}),
    )
    matches = matcher.match("def foo():\n    pass\n")
    assert [(m.name, m.position) for m in matches] == [("foo", Position(0, 4))]


def test_malformed_source_still_walked() -> None:
    matcher = SyntaxMatcher("typescript", targets(INTERFACE))
    assert isinstance(matcher.match("interface {{{ ((("), list)


def test_missing_tree_raises_parse_error() -> None:
    class NoTreeParser:
        def parse(self, data: bytes):
            return None

    matcher = SyntaxMatcher("typescript", targets(INTERFACE))
    matcher._parser = NoTreeParser()
    with pytest.raises(ParseError):
        matcher.match("interface Foo {}")


def test_unknown_grammar_rejected() -> None:
    with pytest.raises(ValueError):
        language_for_grammar("cobol")
