import re

C_STYLE_GRAMMARS = ("typescript", "tsx", "javascript")

_LINE_COMMENTS = re.compile(r"//[^\r\n]*")
_BLOCK_COMMENTS = re.compile(r"/\*[\s\S]*?\*/")
_CONSOLE_LOGS = re.compile(r"console\.log\([^)]*\);\s*")
_NON_ASCII = re.compile(r"[^\x00-\x7f]")


def sanitize_source(text: str, grammar: str = "typescript") -> str:
    """
    Blank out non-ASCII characters and, for C-style grammars, strip comments
    and console.log statements.

    Every remaining character is one byte wide, so tree-sitter byte columns and
    LSP UTF-16 columns agree on the returned text.
    """
    if grammar.lower() in C_STYLE_GRAMMARS:
        text = _LINE_COMMENTS.sub("", text)
        text = _BLOCK_COMMENTS.sub("", text)
        text = _CONSOLE_LOGS.sub("", text)
    return _NON_ASCII.sub(" ", text)
