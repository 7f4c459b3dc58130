"""Newline-delimited JSON-RPC 2.0 over stdin/stdout.

One JSON message per line in each direction.  The client must send
``initialize`` and then the ``initialized`` notification before any
``tools/*`` or ``resources/*`` request.  A malformed frame, or a tool
request before the handshake, is a fatal ``ProtocolError``: the server
answers with a JSON-RPC error and stops, and ``run_stdio`` exits 2.

Nothing but protocol frames is ever written to stdout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import IO, Any, Optional

from mcp import types
from pydantic import BaseModel

from .. import __version__
from ..config import TaskWingConfig
from ..core.debug_log import DebugLogger
from ..errors import InvalidInputError, ProtocolError, TaskWingError
from ..llm.chat_model import ChatModel, get_chat_model
from ..store.finding_store import FindingStore
from ..store.task_store import TaskStore
from .hooks import DebugLogHooks, ServerHooks
from .resources import SERVER_NAME, list_resources, read_resource
from .tools import ServerContext, call_tool, list_tools

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"

EXIT_OK = 0
EXIT_INIT_FAILURE = 1
EXIT_PROTOCOL_ERROR = 2

INSTRUCTIONS = (
    "TaskWing task board for this repository. Use task-summary or board-snapshot for an overview, "
    "find-task to turn a title into an id, and the add/update/mark-done tools to change tasks."
)

_GATED_PREFIXES = ("tools/", "resources/")


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def response(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_response(request_id: Any, code: int, message: str, data: Any = None) -> dict[str, Any]:
    err = types.ErrorData(code=code, message=message, data=data)
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": _dump(err)}


def protocol_error(message: str, request_id: Any = None, rpc_code: int = types.INVALID_REQUEST) -> ProtocolError:
    return ProtocolError(message, details={"id": request_id, "rpcCode": rpc_code})


class MCPServer:
    """Request dispatcher; transport-agnostic apart from ``serve``."""

    def __init__(self, ctx: ServerContext) -> None:
        self.ctx = ctx
        self.initialize_seen = False
        self.initialized = False
        self.client_info: dict[str, Any] = {}

    # ── Framing ───────────────────────────────────────────────────────

    async def handle_line(self, line: str) -> Optional[dict[str, Any]]:
        """Decode one frame and handle it; blank lines are ignored."""
        if not line.strip():
            return None
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            raise protocol_error(f"malformed frame: {exc.msg}", rpc_code=types.PARSE_ERROR) from exc
        return await self.handle(message)

    async def handle(self, message: Any) -> Optional[dict[str, Any]]:
        """Handle one decoded message; returns the response, or ``None`` for notifications."""
        if not isinstance(message, dict) or message.get("jsonrpc") != JSONRPC_VERSION:
            raise protocol_error("not a JSON-RPC 2.0 message", request_id=_id_of(message))
        method = message.get("method")
        request_id = message.get("id")
        is_notification = "id" not in message
        if not isinstance(method, str):
            if "result" in message or "error" in message:
                # A response to a server-initiated request; none are sent.
                return None
            raise protocol_error("missing method", request_id=request_id)
        params = message.get("params") or {}
        if not isinstance(params, dict):
            raise protocol_error("params must be an object", request_id=request_id)

        if method.startswith(_GATED_PREFIXES) and not self.initialized:
            raise protocol_error(f"'{method}' called before initialized", request_id=request_id)

        if is_notification:
            self._notification(method, params)
            return None

        try:
            result = await self._request(method, params)
        except ProtocolError:
            raise
        except InvalidInputError as exc:
            return error_response(request_id, types.INVALID_PARAMS, exc.message, exc.to_dict())
        except TaskWingError as exc:
            return error_response(request_id, types.INTERNAL_ERROR, exc.message, exc.to_dict())
        if result is None:
            return error_response(request_id, types.METHOD_NOT_FOUND, f"method not found: {method}")
        return response(request_id, result)

    # ── Methods ───────────────────────────────────────────────────────

    def _notification(self, method: str, params: dict[str, Any]) -> None:
        if method in ("initialized", "notifications/initialized"):
            if not self.initialize_seen:
                raise protocol_error("'initialized' received before 'initialize'")
            self.initialized = True
            logger.info("client %s initialized", self.client_info.get("name", "?"))
            return
        logger.debug("ignoring notification %s", method)

    async def _request(self, method: str, params: dict[str, Any]) -> Optional[dict[str, Any]]:
        if method == "initialize":
            return self._initialize(params)
        if method == "ping":
            return {}
        if method == "tools/list":
            return _dump(types.ListToolsResult(tools=list_tools()))
        if method == "tools/call":
            name = params.get("name")
            if not isinstance(name, str) or not name:
                raise InvalidInputError("tools/call needs a tool name")
            arguments = params.get("arguments") or {}
            if not isinstance(arguments, dict):
                raise InvalidInputError("tool arguments must be an object", details={"tool": name})
            return _dump(await call_tool(self.ctx, name, arguments))
        if method == "resources/list":
            return _dump(types.ListResourcesResult(resources=list_resources()))
        if method == "resources/read":
            uri = params.get("uri")
            if not isinstance(uri, str) or not uri:
                raise InvalidInputError("resources/read needs a uri")
            result = await asyncio.to_thread(read_resource, self.ctx, uri)
            return _dump(result)
        return None

    def _initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        self.initialize_seen = True
        self.client_info = dict(params.get("clientInfo") or {})
        result = types.InitializeResult(
            protocolVersion=types.LATEST_PROTOCOL_VERSION,
            capabilities=types.ServerCapabilities(
                tools=types.ToolsCapability(listChanged=False),
                resources=types.ResourcesCapability(subscribe=False, listChanged=False),
            ),
            serverInfo=types.Implementation(name=SERVER_NAME, version=__version__),
            instructions=INSTRUCTIONS,
        )
        return _dump(result)

    # ── Transport ─────────────────────────────────────────────────────

    async def serve(self, stdin: IO[str] | None = None, stdout: IO[str] | None = None) -> int:
        """Process frames in arrival order until EOF.

        Returns ``EXIT_OK`` when stdin closes and ``EXIT_PROTOCOL_ERROR``
        after a fatal ``ProtocolError``.
        """
        stdin = stdin or sys.stdin
        stdout = stdout or sys.stdout

        def write(msg: dict[str, Any]) -> None:
            stdout.write(json.dumps(msg, ensure_ascii=False, default=str) + "\n")
            stdout.flush()

        while True:
            line = await asyncio.to_thread(stdin.readline)
            if not line:
                logger.info("stdin closed, shutting down")
                return EXIT_OK
            try:
                reply = await self.handle_line(line)
            except ProtocolError as exc:
                logger.error("%s", exc)
                write(error_response(
                    exc.details.get("id"),
                    exc.details.get("rpcCode", types.INVALID_REQUEST),
                    exc.message,
                    exc.to_dict(),
                ))
                return EXIT_PROTOCOL_ERROR
            if reply is not None:
                await asyncio.to_thread(write, reply)


def _id_of(message: Any) -> Any:
    return message.get("id") if isinstance(message, dict) else None


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_context(config: TaskWingConfig, hooks: ServerHooks | None = None) -> ServerContext:
    """Open the stores; a model is attached only when one can be configured."""
    tasks = TaskStore(config.tasks_file, config.current_task_file)
    findings = FindingStore(config.findings_file)
    model: ChatModel | None = None
    try:
        model = get_chat_model(config.llm)
    except TaskWingError as exc:
        logger.info("no chat model for generate-plan (%s); criteria split only", exc.message)
    return ServerContext(config=config, tasks=tasks, findings=findings, model=model,
                         hooks=hooks or ServerHooks())


def run_stdio(config: TaskWingConfig, stdin: IO[str] | None = None, stdout: IO[str] | None = None) -> int:
    """Run the server until stdin closes; returns the process exit code."""
    debug_log: DebugLogger | None = None
    try:
        debug_log = DebugLogger(
            config.logs_dir,
            enable_stderr=config.log_stderr,
            retention_count=config.log_retention,
            component="mcp",
        )
        server = MCPServer(build_context(config, DebugLogHooks(debug_log)))
    except (OSError, TaskWingError) as exc:
        logger.error("tool server failed to start: %s", exc)
        if debug_log is not None:
            debug_log.close()
        return EXIT_INIT_FAILURE

    done = debug_log.start_phase("serve")
    try:
        code = asyncio.run(server.serve(stdin, stdout))
    except KeyboardInterrupt:
        code = EXIT_OK
    done(None)
    debug_log.close()
    return code
