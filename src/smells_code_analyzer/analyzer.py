import logging
from pathlib import Path
from typing import List, Optional, Sequence

from .classify import count_dead, has_useless_prefix
from .config import AnalyzerConfig
from .logging_utils import log_event
from .lsp_client import LspClient, LspError
from .models import EnrichedNode, MatchedNode
from .sanitize import sanitize_source
from .syntax import ParseError, SyntaxMatcher
from .utils import path_to_uri


class AnalysisError(Exception):
    """Raised when a single file cannot be analyzed; chained over the cause."""

    def __init__(self, message: str, *, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class Analyzer:
    """
    Runs the per-file pipeline against one shared language-server session.
    Files and reference queries are processed strictly one at a time.
    """

    def __init__(
        self,
        config: AnalyzerConfig,
        matcher: SyntaxMatcher,
        client: LspClient,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._matcher = matcher
        self._client = client
        self._logger = logger or logging.getLogger(__name__)
        self._document_version = 0

    @property
    def document_version(self) -> int:
        return self._document_version

    async def analyze_file(self, path: Path) -> List[EnrichedNode]:
        try:
            raw = self._config.read_source(path)
        except OSError as exc:
            raise AnalysisError(f"Failed to read {path}", path=path) from exc
        source = sanitize_source(raw, self._config.grammar)
        try:
            matches = self._matcher.match(source)
        except ParseError as exc:
            raise AnalysisError(f"Failed to parse {path}", path=path) from exc

        uri = path_to_uri(path)
        self._document_version += 1
        try:
            await self._client.did_open(
                uri,
                source,
                language_id=self._config.language_id,
                version=self._document_version,
            )
        except LspError as exc:
            raise AnalysisError(f"Failed to open {path}", path=path) from exc
        nodes = await self.enrich(uri, path, matches)
        try:
            await self._client.did_close(uri)
        except LspError as exc:
            raise AnalysisError(f"Failed to close {path}", path=path) from exc

        log_event(
            self._logger,
            logging.INFO,
            "analyzer.file",
            path=path,
            matches=len(matches),
            dead=count_dead(nodes),
            version=self._document_version,
        )
        return nodes

    async def enrich(
        self,
        uri: str,
        file_path: Path,
        matches: Sequence[MatchedNode],
        parent_name: Optional[str] = None,
    ) -> List[EnrichedNode]:
        """Query each match, then its children, depth-first and sequentially."""
        enriched: List[EnrichedNode] = []
        for match in matches:
            try:
                raw_count = await self._client.references(uri, match.position)
            except LspError as exc:
                raise AnalysisError(
                    f"Failed to get references for {match.name} at "
                    f"{file_path}:{match.position.row}:{match.position.column}",
                    path=file_path,
                ) from exc
            children = await self.enrich(uri, file_path, match.children, match.name)
            enriched.append(
                EnrichedNode(
                    kind=match.kind,
                    name=match.name,
                    position=match.position,
                    file_path=file_path,
                    reference_count=max(0, raw_count - 1),
                    has_useless_prefix=has_useless_prefix(match.name, parent_name),
                    children=children,
                )
            )
        return enriched
