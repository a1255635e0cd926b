import codecs
import dataclasses
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern

import yaml
from dotenv import load_dotenv
from pathspec import GitIgnoreSpec

from .logging_utils import log_event
from .models import NodeTarget

DEFAULT_FILE_GLOB = "**/*"
DEFAULT_ENCODING = "utf-8"
DEFAULT_LSP_VERSION = "0.0.0"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 3
SUPPORTED_GRAMMARS = ("typescript", "tsx", "javascript", "python")

DEFAULT_INITIALIZATION_OPTIONS: Dict[str, Any] = {
    "tsserver": {
        "logDirectory": ".log",
        "logVerbosity": "verbose",
        "trace": "verbose",
    }
}

_REQUIRED_STRINGS = (
    "projectRootPath",
    "analyzeDirectory",
    "lspExecutable",
    "lspName",
    "grammar",
)

_logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass
class AnalyzerConfig:
    raw: Dict[str, Any]
    config_path: Path
    project_root_path: Path
    analyze_directory: Path
    lsp_executable: str
    lsp_args: List[str]
    file_matching_glob: GitIgnoreSpec
    file_exclude_glob: Optional[GitIgnoreSpec]
    content_pattern: Optional[Pattern[str]]
    lsp_capabilities: Dict[str, Any]
    initialization_options: Any
    lsp_version: str
    lsp_name: str
    language_id: str
    grammar: str
    encoding: str
    show_passed: bool
    show_progress: bool
    threshold: Optional[int]
    reference_nodes: List[NodeTarget]
    log: Optional[LogConfig]

    @property
    def lsp_command(self) -> List[str]:
        return [self.lsp_executable, *self.lsp_args]

    def read_source(self, path: Path) -> str:
        return read_source(path, self.encoding)

    def summary(self) -> str:
        return (
            f"root={self.project_root_path}, analyze={self.analyze_directory}, "
            f"grammar={self.grammar}, lsp={' '.join(self.lsp_command)}"
        )


def read_source(path: Path, encoding: str = DEFAULT_ENCODING) -> str:
    """
    Decode a source file, downgrading malformed byte sequences to a warning.
    OSError propagates to the caller.
    """
    data = Path(path).read_bytes()
    try:
        return data.decode(encoding)
    except UnicodeDecodeError as exc:
        log_event(
            _logger,
            logging.WARNING,
            "source.decode_errors",
            path=path,
            encoding=encoding,
            exc=exc,
        )
        return data.decode(encoding, errors="replace")


def load_config_data(config_path: Path) -> Dict[str, Any]:
    """Read the raw config mapping (JSON, or YAML for .yml/.yaml)."""
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {config_path}: {exc}") from exc
    if config_path.suffix.lower() in (".yml", ".yaml"):
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    else:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError(
                f"Invalid configuration JSON {config_path}: {exc}"
            ) from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {config_path}")
    return data


def load_config(
    config_path: Path, threshold_override: Optional[int] = None
) -> AnalyzerConfig:
    config_path = Path(config_path)
    cfg = load_config_data(config_path)
    _validate_config(cfg)
    config_dir = config_path.resolve().parent
    return _build_config(config_path, config_dir, cfg, threshold_override)


def load_dotenv_for_root(root: Path) -> None:
    """Best-effort load of <root>/.env; existing environment wins."""
    try:
        candidate = root / ".env"
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=False)
    except Exception:
        pass


def _build_config(
    config_path: Path,
    config_dir: Path,
    cfg: Dict[str, Any],
    threshold_override: Optional[int],
) -> AnalyzerConfig:
    project_root_path = _absolutize(config_dir, cfg["projectRootPath"])
    analyze_directory = _absolutize(config_dir, cfg["analyzeDirectory"])

    include = cfg.get("fileMatchingRegexp") or DEFAULT_FILE_GLOB
    file_matching_glob = _compile_globs([include], "fileMatchingRegexp")
    excludes = cfg.get("fileExcludeRegexps") or []
    file_exclude_glob = (
        _compile_globs(excludes, "fileExcludeRegexps") if excludes else None
    )

    content_pattern = None
    content_raw = cfg.get("contentMatchingRegexp")
    if content_raw:
        try:
            content_pattern = re.compile(content_raw)
        except re.error as exc:
            raise ConfigError(f"Invalid contentMatchingRegexp: {exc}") from exc

    threshold = threshold_override
    if threshold is None:
        threshold = cfg.get("threshold")

    lsp_name = cfg["lspName"]
    initialization_options = cfg.get("initializationOptions")
    if initialization_options is None:
        initialization_options = json.loads(json.dumps(DEFAULT_INITIALIZATION_OPTIONS))

    reference_nodes = [
        target
        for target in (NodeTarget.from_raw(item) for item in cfg["referenceNodes"])
        if target is not None
    ]

    return AnalyzerConfig(
        raw=cfg,
        config_path=config_path,
        project_root_path=project_root_path,
        analyze_directory=analyze_directory,
        lsp_executable=cfg["lspExecutable"],
        lsp_args=[str(arg) for arg in cfg.get("lspArgs") or []],
        file_matching_glob=file_matching_glob,
        file_exclude_glob=file_exclude_glob,
        content_pattern=content_pattern,
        lsp_capabilities=cfg.get("lspCapabilities") or {},
        initialization_options=initialization_options,
        lsp_version=str(cfg.get("lspVersion") or DEFAULT_LSP_VERSION),
        lsp_name=lsp_name,
        language_id=cfg.get("languageId") or lsp_name,
        grammar=cfg["grammar"].lower(),
        encoding=_resolve_encoding(cfg.get("encoding") or DEFAULT_ENCODING),
        show_passed=bool(cfg.get("showPassed", False)),
        show_progress=bool(cfg.get("showProgress", False)),
        threshold=threshold,
        reference_nodes=reference_nodes,
        log=_parse_log_config(cfg.get("log"), config_dir),
    )


def _validate_config(cfg: Dict[str, Any]) -> None:
    for key in _REQUIRED_STRINGS:
        value = cfg.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{key} must be a non-empty string")
    grammar = cfg["grammar"].lower()
    if grammar not in SUPPORTED_GRAMMARS:
        raise ConfigError(
            f"Unsupported grammar '{cfg['grammar']}'; expected one of "
            f"{', '.join(SUPPORTED_GRAMMARS)}"
        )
    reference_nodes = cfg.get("referenceNodes")
    if not isinstance(reference_nodes, list):
        raise ConfigError("referenceNodes must be a list")
    for key in ("lspArgs", "fileExcludeRegexps"):
        value = cfg.get(key)
        if value is None:
            continue
        if not isinstance(value, list) or not all(
            isinstance(item, str) for item in value
        ):
            raise ConfigError(f"{key} must be a list of strings")
    for key in ("fileMatchingRegexp", "contentMatchingRegexp", "encoding"):
        value = cfg.get(key)
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"{key} must be a string if provided")
    capabilities = cfg.get("lspCapabilities")
    if capabilities is not None and not isinstance(capabilities, dict):
        raise ConfigError("lspCapabilities must be a mapping if provided")
    for key in ("showPassed", "showProgress"):
        value = cfg.get(key)
        if value is not None and not isinstance(value, bool):
            raise ConfigError(f"{key} must be a boolean if provided")
    threshold = cfg.get("threshold")
    if threshold is not None:
        if isinstance(threshold, bool) or not isinstance(threshold, int):
            raise ConfigError("threshold must be an integer or null")
        if threshold < 0:
            raise ConfigError("threshold must be >= 0")


def _parse_log_config(raw: Any, config_dir: Path) -> Optional[LogConfig]:
    if raw is None:
        return None
    if not isinstance(raw, dict) or not isinstance(raw.get("path"), str):
        raise ConfigError("log must be a mapping with a string path")
    try:
        max_bytes = int(raw.get("maxBytes", DEFAULT_LOG_MAX_BYTES))
        backup_count = int(raw.get("backupCount", DEFAULT_LOG_BACKUP_COUNT))
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"log.maxBytes and log.backupCount must be integers: {exc}"
        ) from exc
    return LogConfig(
        path=_absolutize(config_dir, raw["path"]),
        max_bytes=max_bytes,
        backup_count=backup_count,
    )


def _absolutize(base: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if path.is_absolute():
        return path
    return (base / path).resolve()


def _compile_globs(patterns: List[str], key: str) -> GitIgnoreSpec:
    try:
        return GitIgnoreSpec.from_lines(patterns)
    except Exception as exc:
        raise ConfigError(f"Invalid glob in {key}: {exc}") from exc


def _resolve_encoding(label: str) -> str:
    normalized = label.strip().lower()
    if normalized == "ascii":
        normalized = "us-ascii"
    try:
        return codecs.lookup(normalized).name
    except LookupError:
        log_event(
            _logger,
            logging.WARNING,
            "config.encoding.fallback",
            requested=label,
            fallback=DEFAULT_ENCODING,
        )
        return codecs.lookup(DEFAULT_ENCODING).name
