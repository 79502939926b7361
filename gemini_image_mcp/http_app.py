from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from gemini_image_mcp import responses
from gemini_image_mcp.errors import ParseError
from gemini_image_mcp.server import SERVER_NAME, SERVER_VERSION, Dispatcher


def create_app(dispatcher: Dispatcher) -> FastAPI:
    """JSON-RPC over HTTP for clients that cannot spawn a stdio subprocess.

    Shares the dispatcher, and so the session, with whatever created it.
    """
    app = FastAPI(title="Gemini Image MCP Server", version=SERVER_VERSION)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "server": SERVER_NAME,
            "session": dispatcher.state.value,
            "credential_configured": dispatcher.runner.client.configured,
        }

    @app.post("/mcp")
    async def mcp_rpc(request: Request) -> Response:
        try:
            payload = await request.json()
        except ValueError as exc:
            error = responses.failure(None, ParseError(f"Parse error: {exc}"))
            return JSONResponse(status_code=400, content=error)

        reply = await dispatcher.handle_payload(payload)
        if reply is None:
            return Response(status_code=202)
        return JSONResponse(content=reply)

    return app
