"""Server-side method routing.

Turns inbound Requests into Responses: the handshake, `ping`, tool discovery,
and `tools/call` for the single command tool. Command outcomes are translated
into tool results here and nowhere else.
"""

from __future__ import annotations

import json
import logging
from typing import Awaitable, Callable

from mcp_terminal import __version__
from mcp_terminal.errors import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    InvalidArgumentsError,
    ProtocolError,
    RemoteError,
)
from mcp_terminal.protocol import (
    METHOD_INITIALIZE,
    METHOD_INITIALIZED,
    METHOD_PING,
    METHOD_TOOLS_CALL,
    METHOD_TOOLS_LIST,
    PROTOCOL_VERSION,
    ErrorObject,
    Implementation,
    InitializeParams,
    InitializeResult,
    Message,
    Notification,
    Request,
    Response,
    ToolCallParams,
)
from mcp_terminal.protocol.messages import SUPPORTED_PROTOCOL_VERSIONS
from mcp_terminal.shell.exec import (
    CommandError,
    CommandOutcome,
    CommandRequest,
    CommandSuccess,
    ExecutionEngine,
)

log = logging.getLogger("server")

SERVER_NAME = "mcp-terminal-server"
TOOL_NAME = "mcp_run_terminal_cmd"

RUN_TERMINAL_CMD_TOOL = {
    "name": TOOL_NAME,
    "description": "Execute a shell command locally. Handles foreground/background execution.",
    "inputSchema": {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "Complete, single-line shell command. No line breaks.",
            },
            "explanation": {
                "type": "string",
                "description": "One sentence explaining why the command is needed (logged and sent to the client).",
            },
            "is_background": {
                "type": "boolean",
                "description": "true: run detached, server DOES NOT wait for completion; false: wait.",
            },
            "require_user_approval": {
                "type": "boolean",
                "description": (
                    "If true, server DOES NOT execute the command, but returns waiting_for_approval status. "
                    "Client must send another request with require_user_approval=false to execute."
                ),
            },
        },
        "required": ["command", "explanation", "is_background", "require_user_approval"],
        "additionalProperties": False,
        "$schema": "http://json-schema.org/draft-07/schema#",
    },
}


def _text_result(payload: dict, *, is_error: bool = False) -> dict:
    result: dict[str, object] = {
        "content": [{"type": "text", "text": json.dumps(payload, ensure_ascii=False)}],
    }
    if is_error:
        result["isError"] = True
    return result


def outcome_to_tool_result(outcome: CommandOutcome) -> dict:
    """Map a CommandOutcome onto a `tools/call` result body."""
    if isinstance(outcome, CommandSuccess):
        return _text_result(outcome.to_dict())
    if isinstance(outcome, CommandError):
        return _text_result(outcome.to_dict(), is_error=True)
    return _text_result(outcome.to_dict())


class ToolDispatcher:
    def __init__(
        self,
        engine: ExecutionEngine,
        *,
        server_name: str = SERVER_NAME,
        server_version: str = __version__,
    ):
        self.engine = engine
        self.server_info = Implementation(name=server_name, version=server_version)
        self.client_info: Implementation | None = None
        self.initialized = False
        self._handlers: dict[str, Callable[[object], Awaitable[object]]] = {
            METHOD_INITIALIZE: self._initialize,
            METHOD_PING: self._ping,
            METHOD_TOOLS_LIST: self._tools_list,
            METHOD_TOOLS_CALL: self._tools_call,
        }

    async def handle(self, message: Message) -> Response | None:
        """Answer one inbound message; notifications and stray responses get None."""
        if isinstance(message, Notification):
            self._handle_notification(message)
            return None
        if isinstance(message, Response):
            log.debug(f"Ignoring unsolicited response id={message.id!r}")
            return None

        handler = self._handlers.get(message.method)
        if handler is None:
            return self._error(message, METHOD_NOT_FOUND, f"Method not found: {message.method}")

        try:
            result = await handler(message.params)
        except RemoteError as e:
            return self._error(message, e.code, e.message, e.data)
        except (ProtocolError, InvalidArgumentsError) as e:
            return self._error(message, INVALID_PARAMS, str(e))
        except Exception as e:
            log.exception(f"Error handling {message.method}")
            return self._error(message, INTERNAL_ERROR, f"Internal error: {e}")
        return Response(id=message.id, result=result)

    def _handle_notification(self, message: Notification) -> None:
        if message.method == METHOD_INITIALIZED:
            self.initialized = True
            log.info("Client finished initialization")
        else:
            log.debug(f"Ignoring notification {message.method}")

    @staticmethod
    def _error(request: Request, code: int, message: str, data: object | None = None) -> Response:
        return Response(id=request.id, error=ErrorObject(code=code, message=message, data=data))

    async def _initialize(self, params: object) -> dict:
        init = InitializeParams.from_dict(params)
        self.client_info = init.client_info
        version = init.protocol_version
        if version not in SUPPORTED_PROTOCOL_VERSIONS:
            version = PROTOCOL_VERSION
        log.info(
            f"Initialize from {init.client_info.name} {init.client_info.version} "
            f"(requested protocol {init.protocol_version}, using {version})"
        )
        return InitializeResult(
            protocol_version=version,
            server_info=self.server_info,
            capabilities={"tools": {}},
        ).to_dict()

    async def _ping(self, params: object) -> dict:
        return {}

    async def _tools_list(self, params: object) -> dict:
        return {"tools": [RUN_TERMINAL_CMD_TOOL]}

    async def _tools_call(self, params: object) -> dict:
        call = ToolCallParams.from_dict(params)
        if call.name != TOOL_NAME:
            raise RemoteError(INVALID_PARAMS, f"Unknown tool: {call.name}")

        try:
            request = CommandRequest.from_arguments(call.arguments)
        except InvalidArgumentsError as e:
            log.info(f"Invalid arguments for {TOOL_NAME}: {e}")
            return _text_result(
                {
                    "error": True,
                    "message": "Invalid arguments for run_terminal_cmd",
                    "details": e.issues,
                },
                is_error=True,
            )

        outcome = await self.engine.execute(request)
        return outcome_to_tool_result(outcome)
