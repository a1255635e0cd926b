import json
import os
import sys
import warnings
from pathlib import Path

import pytest
from pathspec import GitIgnoreSpec

from smells_code_analyzer.config import (
    ConfigError,
    load_config,
    load_dotenv_for_root,
    read_source,
)


def test_defaults_and_relative_paths(tmp_path: Path, write_config) -> None:
    config = load_config(write_config())
    assert config.project_root_path == (tmp_path / "project").resolve()
    assert config.analyze_directory == (tmp_path / "project" / "src").resolve()
    assert config.lsp_command[0] == sys.executable
    assert config.language_id == "typescript"
    assert config.lsp_version == "0.0.0"
    assert config.encoding == "utf-8"
    assert config.threshold is None
    assert config.show_passed is False
    assert config.initialization_options["tsserver"]["logVerbosity"] == "verbose"
    assert [t.node_kind for t in config.reference_nodes] == [
        "interface_declaration",
        "class_declaration",
    ]
    assert config.reference_nodes[1].children[0].reference_child_kind == (
        "property_identifier"
    )
    assert config.log is None


def test_threshold_override_wins(write_config) -> None:
    path = write_config(threshold=10)
    assert load_config(path).threshold == 10
    assert load_config(path, threshold_override=2).threshold == 2


def test_reference_nodes_without_type_are_dropped(write_config) -> None:
    path = write_config(
        referenceNodes=[
            {"refType": "identifier"},
            {"type": "class_declaration", "children": [{"children": []}]},
        ]
    )
    nodes = load_config(path).reference_nodes
    assert len(nodes) == 1
    assert nodes[0].reference_child_kind is None
    assert nodes[0].children == []


def test_globs_match_relative_paths(write_config) -> None:
    config = load_config(write_config())
    assert config.file_matching_glob.match_file("a.ts")
    assert config.file_matching_glob.match_file("deep/dir/b.ts")
    assert not config.file_matching_glob.match_file("c.js")
    assert config.file_exclude_glob.match_file("types/x.d.ts")


def test_glob_compile_is_warning_free(write_config) -> None:
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        config = load_config(write_config())
    assert isinstance(config.file_matching_glob, GitIgnoreSpec)
    assert isinstance(config.file_exclude_glob, GitIgnoreSpec)
    assert [w for w in caught if issubclass(w.category, DeprecationWarning)] == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"lspName": ""},
        {"grammar": "cobol"},
        {"referenceNodes": {"type": "x"}},
        {"threshold": -1},
        {"threshold": "3"},
        {"lspArgs": "--stdio"},
        {"contentMatchingRegexp": "("},
        {"showPassed": "yes"},
        {"log": {"path": 3}},
    ],
)
def test_invalid_config_rejected(write_config, overrides) -> None:
    with pytest.raises(ConfigError):
        load_config(write_config(**overrides))


def test_missing_and_malformed_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError) as excinfo:
        load_config(bad)
    assert excinfo.value.__cause__ is not None


def test_yaml_config(tmp_path: Path, write_config) -> None:
    data = json.loads(write_config().read_text(encoding="utf-8"))
    yaml_path = tmp_path / "sca.yml"
    lines = [f"{key}: {json.dumps(value)}" for key, value in data.items()]
    yaml_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    config = load_config(yaml_path)
    assert config.grammar == "typescript"
    assert len(config.reference_nodes) == 2


def test_log_section_resolves_path(tmp_path: Path, write_config) -> None:
    config = load_config(write_config(log={"path": "logs/sca.log", "maxBytes": 100}))
    assert config.log is not None
    assert config.log.path == (tmp_path / "logs" / "sca.log").resolve()
    assert config.log.max_bytes == 100
    assert config.log.backup_count == 3


def test_unknown_encoding_falls_back(write_config) -> None:
    assert load_config(write_config(encoding="no-such-codec")).encoding == "utf-8"
    assert load_config(write_config(encoding="latin-1")).encoding == "iso8859-1"


def test_read_source_replaces_undecodable_bytes(tmp_path: Path) -> None:
    path = tmp_path / "a.ts"
    path.write_bytes(b"interface Foo {}\xff\n")
    assert read_source(path) == "interface Foo {}�\n"
    with pytest.raises(OSError):
        read_source(tmp_path / "missing.ts")


def test_dotenv_does_not_override(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("SCA_TEST_EXISTING", "kept")
    monkeypatch.delenv("SCA_TEST_NEW", raising=False)
    (tmp_path / ".env").write_text(
        "SCA_TEST_EXISTING=replaced\nSCA_TEST_NEW=loaded\n", encoding="utf-8"
    )
    try:
        load_dotenv_for_root(tmp_path)
        assert os.environ["SCA_TEST_EXISTING"] == "kept"
        assert os.environ["SCA_TEST_NEW"] == "loaded"
    finally:
        os.environ.pop("SCA_TEST_NEW", None)
