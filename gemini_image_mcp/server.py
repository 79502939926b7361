import asyncio
import json
import logging
import re
import time
from enum import Enum
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from gemini_image_mcp import responses
from gemini_image_mcp.errors import (
    BridgeError,
    MethodNotFound,
    ParseError,
    ProtocolError,
    ValidationError,
)
from gemini_image_mcp.registry import list_tools, lookup_tool
from gemini_image_mcp.schemas import McpRpcRequest
from gemini_image_mcp.tools import ToolRunner
from gemini_image_mcp.transport import LineTransport

logger = logging.getLogger(__name__)

SERVER_NAME = "gemini-image-mcp"
SERVER_VERSION = "1.1.0"
DEFAULT_PROTOCOL_VERSION = "2024-11-05"
SUPPORTED_PROTOCOL_VERSIONS = {"2024-11-05", "2025-03-26", "2025-06-18"}

_ID_PATTERN = re.compile(r'"id"\s*:\s*("(?:[^"\\]|\\.)*"|-?\d+(?:\.\d+)?)')


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


def recover_id(raw: str) -> Any:
    """Best-effort id extraction from text that is not valid JSON."""
    match = _ID_PATTERN.search(raw)
    if not match:
        return None
    try:
        return json.loads(match.group(1))
    except json.JSONDecodeError:
        return None


class Dispatcher:
    def __init__(self, runner: ToolRunner, strict_lifecycle: bool = False) -> None:
        self.runner = runner
        self.strict_lifecycle = strict_lifecycle
        self.state = SessionState.UNINITIALIZED

    async def handle_message(self, raw: str) -> dict[str, Any] | None:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            request_id = recover_id(raw)
            if request_id is None:
                logger.warning("dropping unparseable message without id: %s", exc)
                return None
            return responses.failure(request_id, ParseError(f"Parse error: {exc}"))
        return await self.handle_payload(payload)

    async def handle_payload(self, payload: Any) -> dict[str, Any] | None:
        try:
            request = McpRpcRequest.model_validate(payload)
        except PydanticValidationError as exc:
            request_id = payload.get("id") if isinstance(payload, dict) else None
            if request_id is None or isinstance(request_id, (dict, list, bool)):
                logger.warning("dropping invalid request without usable id")
                return None
            detail = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}"
                for err in exc.errors()
            )
            return responses.failure(request_id, ProtocolError(f"Invalid Request: {detail}"))
        return await self.dispatch(request)

    async def dispatch(self, request: McpRpcRequest) -> dict[str, Any] | None:
        started = time.perf_counter()
        extra: dict[str, Any] = {"request_id": request.id, "method": request.method}
        if request.method == "tools/call":
            tool_name = request.params.get("name")
            extra["tool"] = tool_name if isinstance(tool_name, str) else None

        try:
            result = await self._route(request)
        except BridgeError as exc:
            extra["latency_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
            logger.warning("request_failed: %s", exc.message, extra=extra)
            if request.is_notification:
                return None
            return responses.failure(request.id, exc)
        except Exception:  # noqa: BLE001
            extra["latency_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
            logger.exception("request_crashed", extra=extra)
            if request.is_notification:
                return None
            return responses.failure(request.id, BridgeError("Internal error"))

        extra["latency_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
        if request.is_notification:
            logger.debug("notification_handled", extra=extra)
            return None
        logger.info("request_complete", extra=extra)
        return responses.success(request.id, result)

    async def _route(self, request: McpRpcRequest) -> dict[str, Any] | None:
        if request.method == "initialize":
            return self._initialize(request.params)
        if request.method == "tools/list":
            self._ensure_ready(request.method)
            return {"tools": list_tools()}
        if request.method == "tools/call":
            self._ensure_ready(request.method)
            return await self._call_tool(request.params)
        if request.is_notification and request.method.startswith("notifications/"):
            return None
        raise MethodNotFound(f"Method not found: {request.method}")

    def _initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        requested = params.get("protocolVersion")
        if requested in SUPPORTED_PROTOCOL_VERSIONS:
            version = requested
        else:
            version = DEFAULT_PROTOCOL_VERSION
        self.state = SessionState.READY
        return {
            "protocolVersion": version,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        }

    def _ensure_ready(self, method: str) -> None:
        if self.state is SessionState.READY:
            return
        if self.strict_lifecycle:
            if method == "tools/call":
                raise ProtocolError("Server not initialized: send initialize first")
            return
        logger.info("implicit initialize on %s", method, extra={"method": method})
        self.state = SessionState.READY

    async def _call_tool(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise ValidationError("Missing tool name", field="name")
        schema = lookup_tool(name)
        return await self.runner.run(schema, params.get("arguments"))


async def serve(transport: LineTransport, dispatcher: Dispatcher) -> None:
    """Read messages until end of input, handling each one in its own task.

    Responses are written as requests finish, in any order. Cancelling the
    caller cancels every in-flight request and nothing is written for them.
    """
    in_flight: set[asyncio.Task] = set()

    async def process(raw: str) -> None:
        response = await dispatcher.handle_message(raw)
        if response is None:
            return
        try:
            await transport.send(response)
        except OSError as exc:
            logger.error("failed to write response for id %r: %s", response.get("id"), exc)

    try:
        async for raw in transport.messages():
            task = asyncio.create_task(process(raw))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
        if in_flight:
            await asyncio.gather(*in_flight)
    except asyncio.CancelledError:
        for task in in_flight:
            task.cancel()
        await asyncio.gather(*in_flight, return_exceptions=True)
        raise
