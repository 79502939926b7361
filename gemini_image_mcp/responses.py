from pathlib import Path
from typing import Any

from gemini_image_mcp.errors import BridgeError
from gemini_image_mcp.registry import Tool
from gemini_image_mcp.schemas import ApiResult, Caption, McpRpcResponse

_SAVED_VERBS = {
    Tool.GENERATE_IMAGE: "generated",
    Tool.EDIT_IMAGE: "edited",
}


def success(request_id: Any, result: dict[str, Any] | None) -> dict[str, Any]:
    return McpRpcResponse(id=request_id, result=result).to_wire()


def failure(request_id: Any, error: BridgeError) -> dict[str, Any]:
    return McpRpcResponse(id=request_id, error=error.to_error_object()).to_wire()


def tool_result(tool: Tool, result: ApiResult, output_path: Path | None = None) -> dict[str, Any]:
    if isinstance(result, Caption):
        return {
            "content": [{"type": "text", "text": result.text}],
            "isError": False,
        }

    if output_path is None:
        raise ValueError(f"{tool.value} produced an image but has no output path")
    verb = _SAVED_VERBS.get(tool, "saved")
    return {
        "content": [
            {"type": "text", "text": f"Image successfully {verb} and saved to: {output_path}"}
        ],
        "isError": False,
        "file_path": str(output_path),
        "mime_type": result.mime_type,
        "size_bytes": len(result.data),
    }
