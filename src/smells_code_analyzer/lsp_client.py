import asyncio
import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Union,
)

from .logging_utils import log_event
from .models import Position

if TYPE_CHECKING:
    from .config import AnalyzerConfig

NotificationHandler = Callable[[Dict[str, Any]], Union[Awaitable[None], None]]

JSONRPC_VERSION = "2.0"
_MAX_MESSAGE_BYTES = 50 * 1024 * 1024
_MAX_HEADER_LINES = 32

REFERENCES_TIMEOUT_SECONDS = 30.0
REFERENCES_MAX_ATTEMPTS = 3
REFERENCES_RETRY_BACKOFF_SECONDS = 0.5
SETTLE_DELAY_SECONDS = 0.05

WORKSPACE_FOLDER_NAME = "workspace"

_QUIET_NOTIFICATIONS = {
    "textDocument/publishDiagnostics",
    "$/progress",
    "telemetry/event",
}


class LspError(Exception):
    """Base error for language-server client failures."""


class LspSpawnError(LspError):
    """Raised when the language-server process cannot be started."""


class LspTransportError(LspError):
    """Raised when the pipe closes or a frame cannot be read or decoded."""


class LspTimeoutError(LspTransportError):
    """Raised when a request gets no response within its timeout."""


class LspResponseError(LspError):
    """Raised when the server answers with an error object or a malformed result."""

    def __init__(
        self,
        *,
        method: Optional[str],
        code: Optional[int],
        message: str,
        data: Optional[Any] = None,
    ) -> None:
        super().__init__(f"LSP error {method}: {message}")
        self.method = method
        self.code = code
        self.data = data


class ClientState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


def encode_message(message: Dict[str, Any]) -> bytes:
    body = json.dumps(message, separators=(",", ":")).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


async def read_message(reader: asyncio.StreamReader) -> Optional[Dict[str, Any]]:
    """
    Read one Content-Length framed JSON-RPC message.
    Returns None on a clean end of stream between messages.
    """
    content_length: Optional[int] = None
    header_lines = 0
    while True:
        try:
            line = await reader.readline()
        except (ValueError, asyncio.LimitOverrunError) as exc:
            raise LspTransportError(f"Oversized header line: {exc}") from exc
        if not line:
            if header_lines == 0:
                return None
            raise LspTransportError("Language server closed the stream inside a header")
        header_lines += 1
        if header_lines > _MAX_HEADER_LINES:
            raise LspTransportError("Too many header lines in message")
        text = line.decode("ascii", errors="replace").strip()
        if not text:
            break
        name, sep, value = text.partition(":")
        if not sep:
            raise LspTransportError(f"Malformed header line: {text!r}")
        if name.strip().lower() == "content-length":
            try:
                content_length = int(value.strip())
            except ValueError as exc:
                raise LspTransportError(f"Invalid Content-Length: {value!r}") from exc
    if content_length is None:
        raise LspTransportError("Missing Content-Length header")
    if content_length < 0 or content_length > _MAX_MESSAGE_BYTES:
        raise LspTransportError(f"Unsupported Content-Length: {content_length}")
    try:
        body = await reader.readexactly(content_length)
    except asyncio.IncompleteReadError as exc:
        raise LspTransportError(
            "Language server closed the stream inside a message body"
        ) from exc
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise LspTransportError(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(message, dict):
        raise LspTransportError("JSON-RPC message must be an object")
    return message


class LspClient:
    """
    One language-server session over the child's stdio.

    A single reader task owns stdout: responses resolve the pending future with
    the same id, server requests are answered and notifications logged in
    arrival order before the next frame is read.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        root_path: Path,
        client_name: str = "smells-code-analyzer",
        client_version: str = "0.0.0",
        capabilities: Optional[Dict[str, Any]] = None,
        initialization_options: Optional[Any] = None,
        env: Optional[Dict[str, str]] = None,
        request_timeout: float = REFERENCES_TIMEOUT_SECONDS,
        max_attempts: int = REFERENCES_MAX_ATTEMPTS,
        retry_backoff: float = REFERENCES_RETRY_BACKOFF_SECONDS,
        settle_delay: float = SETTLE_DELAY_SECONDS,
        notification_handler: Optional[NotificationHandler] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not command:
            raise LspSpawnError("Language server command is empty")
        self._command = [str(arg) for arg in command]
        self._root_path = Path(root_path)
        self._client_name = client_name
        self._client_version = client_version
        self._capabilities = capabilities or {}
        self._initialization_options = initialization_options
        self._env = env
        self._request_timeout = request_timeout
        self._max_attempts = max(1, max_attempts)
        self._retry_backoff = retry_backoff
        self._settle_delay = settle_delay
        self._notification_handler = notification_handler
        self._logger = logger or logging.getLogger(__name__)

        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._pending: Dict[int, asyncio.Future] = {}
        self._pending_methods: Dict[int, str] = {}
        self._next_id = 1
        self._state = ClientState.UNINITIALIZED
        self._disconnect_error: Optional[LspTransportError] = None
        self._workspace_folders: List[Dict[str, str]] = [
            {
                "uri": _directory_uri(self._root_path),
                "name": WORKSPACE_FOLDER_NAME,
            }
        ]

    @classmethod
    def from_config(cls, config: "AnalyzerConfig", **kwargs: Any) -> "LspClient":
        return cls(
            config.lsp_command,
            root_path=config.project_root_path,
            client_name=config.lsp_name,
            client_version=config.lsp_version,
            capabilities=config.lsp_capabilities,
            initialization_options=config.initialization_options,
            **kwargs,
        )

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def workspace_folders(self) -> List[Dict[str, str]]:
        return [dict(folder) for folder in self._workspace_folders]

    @property
    def returncode(self) -> Optional[int]:
        if self._process is None:
            return None
        return self._process.returncode

    async def __aenter__(self) -> "LspClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if self._state is not ClientState.TERMINATED:
            await self.terminate()

    async def start(self) -> None:
        if self._state is not ClientState.UNINITIALIZED:
            raise LspError(f"Cannot start client in state {self._state.value}")
        await self._spawn_process()
        self._state = ClientState.INITIALIZING
        try:
            await self._initialize_handshake()
        except BaseException:
            await self.terminate()
            raise
        self._state = ClientState.READY
        log_event(self._logger, logging.INFO, "lsp.ready")

    async def request(
        self,
        method: str,
        params: Optional[Any] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        return await self._request_raw(method, params, timeout=timeout)

    async def notify(self, method: str, params: Optional[Any] = None) -> None:
        log_event(self._logger, logging.DEBUG, "lsp.notify", method=method)
        await self._send_message(self._build_message(method, params=params))

    async def did_open(
        self, uri: str, text: str, *, language_id: str, version: int
    ) -> None:
        await self.notify(
            "textDocument/didOpen",
            {
                "textDocument": {
                    "uri": uri,
                    "languageId": language_id,
                    "version": version,
                    "text": text,
                }
            },
        )

    async def did_close(self, uri: str) -> None:
        await self.notify("textDocument/didClose", {"textDocument": {"uri": uri}})

    async def references(self, uri: str, position: Position) -> int:
        """
        Number of locations the server reports for the symbol at `position`,
        the declaration site included.
        """
        params = {
            "textDocument": {"uri": uri},
            "position": {"line": position.row, "character": position.column},
            "context": {"includeDeclaration": True},
        }
        last_error: Optional[LspError] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                result = await self._request_raw(
                    "textDocument/references",
                    params,
                    timeout=self._request_timeout,
                )
            except asyncio.TimeoutError:
                last_error = LspTimeoutError(
                    f"textDocument/references timed out after {self._request_timeout}s"
                )
            except LspError as exc:
                last_error = exc
            else:
                return _count_locations(result)
            log_event(
                self._logger,
                logging.WARNING,
                "lsp.references.retry",
                uri=uri,
                row=position.row,
                column=position.column,
                attempt=attempt,
                max_attempts=self._max_attempts,
                exc=last_error,
            )
            if attempt < self._max_attempts:
                await asyncio.sleep(self._retry_backoff)
        assert last_error is not None
        raise last_error

    async def shutdown(self) -> None:
        if self._state is ClientState.TERMINATED:
            return
        self._state = ClientState.SHUTTING_DOWN
        try:
            await self._request_raw("shutdown", None)
            await self.notify("exit")
        except BaseException:
            await self.terminate()
            raise
        self._cancel_stderr_drain()
        process = self._process
        if process is not None:
            returncode = await process.wait()
            log_event(
                self._logger,
                logging.WARNING if returncode else logging.INFO,
                "lsp.exit",
                returncode=returncode,
            )
        await self._stop_reader()
        self._state = ClientState.TERMINATED

    async def terminate(self) -> None:
        """Abnormal teardown: kill the process and abort background tasks."""
        self._state = ClientState.TERMINATED
        self._cancel_stderr_drain()
        process = self._process
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        await self._stop_reader()
        self._fail_pending(LspTransportError("Client terminated"))

    async def _spawn_process(self) -> None:
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                cwd=str(self._root_path),
                env=self._env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise LspSpawnError(f"Failed to spawn {self._command[0]}: {exc}") from exc
        log_event(
            self._logger,
            logging.INFO,
            "lsp.spawned",
            command=list(self._command),
            cwd=self._root_path,
            pid=self._process.pid,
        )
        self._disconnect_error = None
        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _initialize_handshake(self) -> None:
        params = {
            "processId": os.getpid(),
            "clientInfo": {
                "name": self._client_name,
                "version": self._client_version,
            },
            "rootUri": None,
            "capabilities": self._capabilities,
            "initializationOptions": self._initialization_options,
            "workspaceFolders": self.workspace_folders,
        }
        await self._request_raw("initialize", params)
        await self.notify("initialized", {})
        await self.notify("workspace/didChangeConfiguration", {"settings": None})
        await asyncio.sleep(self._settle_delay)

    async def _request_raw(
        self,
        method: str,
        params: Optional[Any],
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        self._ensure_connected()
        request_id = self._next_request_id()
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[request_id] = future
        self._pending_methods[request_id] = method
        log_event(
            self._logger,
            logging.DEBUG,
            "lsp.request",
            request_id=request_id,
            method=method,
        )
        try:
            await self._send_message(
                self._build_message(method, params=params, req_id=request_id)
            )
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(request_id, None)
            self._pending_methods.pop(request_id, None)

    def _ensure_connected(self) -> None:
        if self._state is ClientState.TERMINATED:
            raise LspTransportError("Language server session is terminated")
        if self._disconnect_error is not None:
            raise LspTransportError(
                f"Language server is not connected: {self._disconnect_error}"
            )
        if self._process is None or self._process.stdin is None:
            raise LspTransportError("Language server process is not running")

    async def _send_message(self, message: Dict[str, Any]) -> None:
        self._ensure_connected()
        assert self._process is not None and self._process.stdin is not None
        payload = encode_message(message)
        async with self._write_lock:
            try:
                self._process.stdin.write(payload)
                await self._process.stdin.drain()
            except (ConnectionError, OSError) as exc:
                raise LspTransportError(
                    f"Failed to write to language server: {exc}"
                ) from exc

    def _build_message(
        self,
        method: str,
        *,
        params: Optional[Any] = None,
        req_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION}
        if req_id is not None:
            message["id"] = req_id
        message["method"] = method
        if params is not None:
            message["params"] = params
        return message

    def _build_response(self, req_id: Any, result: Any) -> Dict[str, Any]:
        return {"jsonrpc": JSONRPC_VERSION, "id": req_id, "result": result}

    def _next_request_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    async def _read_loop(self) -> None:
        assert self._process is not None
        assert self._process.stdout is not None
        error: Optional[LspTransportError] = None
        try:
            while True:
                message = await read_message(self._process.stdout)
                if message is None:
                    break
                await self._handle_message(message)
        except LspTransportError as exc:
            error = exc
        except Exception as exc:
            error = LspTransportError(f"Failed to handle server message: {exc}")
        finally:
            self._handle_disconnect(error)

    async def _drain_stderr(self) -> None:
        if not self._process or not self._process.stderr:
            return
        try:
            while True:
                line = await self._process.stderr.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    log_event(self._logger, logging.DEBUG, "lsp.stderr", line=text)
        except Exception:
            return

    async def _handle_message(self, message: Dict[str, Any]) -> None:
        if "id" in message and "method" not in message:
            self._handle_response(message)
            return
        if "id" in message and "method" in message:
            await self._handle_server_request(message)
            return
        if "method" in message:
            await self._handle_notification(message)
            return
        log_event(
            self._logger,
            logging.DEBUG,
            "lsp.message.unknown",
            keys=list(message.keys())[:10],
        )

    def _handle_response(self, message: Dict[str, Any]) -> None:
        req_id = _normalize_id(message.get("id"))
        future = self._pending.pop(req_id, None) if req_id is not None else None
        method = self._pending_methods.pop(req_id, None) if req_id is not None else None
        if future is None or future.done():
            log_event(
                self._logger,
                logging.DEBUG,
                "lsp.response.unmatched",
                request_id=message.get("id"),
            )
            return
        error = message.get("error")
        if error is not None:
            err = error if isinstance(error, dict) else {"message": str(error)}
            log_event(
                self._logger,
                logging.WARNING,
                "lsp.response.error",
                request_id=req_id,
                method=method,
                error_code=err.get("code"),
                error_message=err.get("message"),
            )
            future.set_exception(
                LspResponseError(
                    method=method,
                    code=err.get("code"),
                    message=err.get("message") or "language server error",
                    data=err.get("data"),
                )
            )
            return
        log_event(
            self._logger,
            logging.DEBUG,
            "lsp.response",
            request_id=req_id,
            method=method,
        )
        future.set_result(message.get("result"))

    async def _handle_server_request(self, message: Dict[str, Any]) -> None:
        method = message.get("method")
        req_id = message.get("id")
        params = message.get("params")
        result: Any = None
        if method == "workspace/configuration":
            items = params.get("items") if isinstance(params, dict) else None
            result = [None for _ in items] if isinstance(items, list) else []
        elif method == "workspace/workspaceFolders":
            result = self.workspace_folders
        elif method == "window/workDoneProgress/create":
            result = None
        else:
            log_event(
                self._logger,
                logging.DEBUG,
                "lsp.server_request.unhandled",
                request_id=req_id,
                method=method,
            )
        log_event(
            self._logger,
            logging.DEBUG,
            "lsp.server_request",
            request_id=req_id,
            method=method,
        )
        await self._send_message(self._build_response(req_id, result))

    async def _handle_notification(self, message: Dict[str, Any]) -> None:
        method = message.get("method")
        params = message.get("params")
        if method == "window/logMessage":
            payload = params if isinstance(params, dict) else {}
            log_event(
                self._logger,
                logging.DEBUG,
                "lsp.log_message",
                message_type=payload.get("type"),
                message=payload.get("message"),
            )
        elif method in _QUIET_NOTIFICATIONS:
            log_event(self._logger, logging.DEBUG, "lsp.notification", method=method)
        else:
            log_event(
                self._logger,
                logging.DEBUG,
                "lsp.notification.unhandled",
                method=method,
            )
        if self._notification_handler is not None:
            try:
                await _maybe_await(self._notification_handler(message))
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "lsp.notification_handler.failed",
                    method=method,
                    exc=exc,
                )

    def _handle_disconnect(self, error: Optional[LspTransportError]) -> None:
        expected = self._state in (ClientState.SHUTTING_DOWN, ClientState.TERMINATED)
        self._disconnect_error = error or LspTransportError(
            "Language server closed the stream"
        )
        log_event(
            self._logger,
            logging.DEBUG if expected and error is None else logging.WARNING,
            "lsp.disconnected",
            state=self._state.value,
            exc=error,
        )
        self._fail_pending(self._disconnect_error)

    def _fail_pending(self, error: Exception) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
        self._pending_methods.clear()

    def _cancel_stderr_drain(self) -> None:
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            self._stderr_task = None

    async def _stop_reader(self) -> None:
        task = self._reader_task
        self._reader_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def _count_locations(result: Any) -> int:
    if result is None:
        return 0
    if isinstance(result, list):
        return len(result)
    raise LspResponseError(
        method="textDocument/references",
        code=None,
        message=f"expected a list of locations, got {type(result).__name__}",
    )


def _normalize_id(raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.isdigit():
        return int(raw)
    return None


def _directory_uri(path: Path) -> str:
    uri = path.expanduser().resolve().as_uri()
    return uri if uri.endswith("/") else uri + "/"


async def _maybe_await(value: Any) -> Any:
    if asyncio.iscoroutine(value):
        return await value
    return value
