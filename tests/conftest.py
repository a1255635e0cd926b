"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `smells_code_analyzer` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

FIXTURE_SERVER = Path(__file__).parent / "fixtures" / "lsp_server_fixture.py"


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def fixture_args(
    scenario: str = "basic",
    *,
    references: Optional[int] = None,
    counts: Optional[str] = None,
) -> list[str]:
    args = ["-u", str(FIXTURE_SERVER), "--scenario", scenario]
    if references is not None:
        args += ["--references", str(references)]
    if counts is not None:
        args += ["--counts", counts]
    return args


@pytest.fixture()
def write_config(tmp_path: Path) -> Callable[..., Path]:
    """
    Write a config file for a TypeScript project under `tmp_path/project`.

    The language server is the fixture server; keyword overrides replace
    top-level keys.
    """

    def _write(
        *,
        scenario: str = "basic",
        references: Optional[int] = None,
        counts: Optional[str] = None,
        **overrides: Any,
    ) -> Path:
        project = tmp_path / "project"
        (project / "src").mkdir(parents=True, exist_ok=True)
        data: dict[str, Any] = {
            "projectRootPath": "project",
            "analyzeDirectory": "project/src",
            "lspExecutable": sys.executable,
            "lspArgs": fixture_args(scenario, references=references, counts=counts),
            "fileMatchingRegexp": "**/*.ts",
            "fileExcludeRegexps": ["**/*.d.ts"],
            "lspName": "typescript",
            "grammar": "typescript",
            "referenceNodes": [
                {"type": "interface_declaration", "refType": "type_identifier"},
                {
                    "type": "class_declaration",
                    "refType": "type_identifier",
                    "children": [
                        {
                            "type": "method_definition",
                            "refType": "property_identifier",
                        }
                    ],
                },
            ],
        }
        data.update(overrides)
        config_path = tmp_path / "sca.json"
        config_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return config_path

    return _write


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    # The LSP client is built on asyncio streams and subprocesses.
    return "asyncio"
