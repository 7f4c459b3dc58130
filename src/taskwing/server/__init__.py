"""Stdio tool server.

Modules
-------
protocol  : JSON-RPC framing, handshake and ``run_stdio``
tools     : tool descriptors and handlers over the task store
resources : ``taskwing://`` resources
resolver  : id / prefix / fuzzy reference resolution
query     : boolean query language used by ``query-tasks``
hooks     : invocation hooks (logging, debug log, recording)
"""

from .hooks import DebugLogHooks, RecordingHooks, ServerHooks
from .protocol import EXIT_INIT_FAILURE, EXIT_OK, EXIT_PROTOCOL_ERROR, MCPServer, build_context, run_stdio
from .resolver import ResolveResult, resolve_reference, resolve_task_id
from .tools import TOOLS, ServerContext, call_tool

__all__ = [
    "DebugLogHooks",
    "RecordingHooks",
    "ServerHooks",
    "EXIT_INIT_FAILURE",
    "EXIT_OK",
    "EXIT_PROTOCOL_ERROR",
    "MCPServer",
    "build_context",
    "run_stdio",
    "ResolveResult",
    "resolve_reference",
    "resolve_task_id",
    "TOOLS",
    "ServerContext",
    "call_tool",
]
