import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Set

from .config import AnalyzerConfig
from .logging_utils import log_event
from .utils import is_within

_logger = logging.getLogger(__name__)


def collect_files(
    config: AnalyzerConfig, only: Optional[Iterable[Path]] = None
) -> List[Path]:
    """
    Files to analyze, sorted and de-duplicated.

    Without `only`, `analyzeDirectory` is walked (hidden entries included,
    symlinks skipped); otherwise the listed paths are filtered the same way.
    """
    root = config.analyze_directory.resolve()
    if only is None:
        candidates = _walk(root)
    else:
        candidates = []
        for path in only:
            resolved = Path(path).resolve()
            if not is_within(root, resolved):
                log_event(
                    _logger,
                    logging.DEBUG,
                    "files.skip",
                    path=resolved,
                    reason="outside analyze directory",
                )
                continue
            candidates.append(resolved)
    files = {path for path in candidates if _accept(config, root, path)}
    return sorted(files)


def load_target_file_set(path: Path) -> Set[Path]:
    """Read newline-separated paths; relative entries resolve against the list file."""
    list_dir = path.parent
    targets: Set[Path] = set()
    for idx, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        entry = line.strip()
        if not entry:
            continue
        candidate = Path(entry).expanduser()
        if not candidate.is_absolute():
            candidate = list_dir / candidate
        if not candidate.exists():
            log_event(
                _logger,
                logging.DEBUG,
                "files.skip",
                path=entry,
                line=idx,
                reason="missing",
            )
            continue
        targets.add(candidate.resolve())
    return targets


def _walk(root: Path) -> List[Path]:
    found = []
    for dirpath, _dirnames, filenames in os.walk(root, followlinks=False):
        for name in filenames:
            path = Path(dirpath) / name
            if path.is_symlink() or not path.is_file():
                continue
            found.append(path)
    return found


def _accept(config: AnalyzerConfig, root: Path, path: Path) -> bool:
    relative = path.relative_to(root).as_posix()
    if not config.file_matching_glob.match_file(relative):
        log_event(_logger, logging.DEBUG, "files.skip", path=path, reason="glob")
        return False
    if config.file_exclude_glob is not None and config.file_exclude_glob.match_file(
        relative
    ):
        log_event(_logger, logging.DEBUG, "files.skip", path=path, reason="excluded")
        return False
    if config.content_pattern is not None:
        if not config.content_pattern.search(config.read_source(path)):
            log_event(
                _logger, logging.DEBUG, "files.skip", path=path, reason="content"
            )
            return False
    return True
