from dataclasses import dataclass
from enum import Enum
from typing import Any

from gemini_image_mcp.errors import ValidationError
from gemini_image_mcp.schemas import ApiMode

DEFAULT_CAPTION_PROMPT = "Caption this image."


class Tool(str, Enum):
    ANALYZE_IMAGE = "analyze_image"
    GENERATE_IMAGE = "generate_image"
    EDIT_IMAGE = "edit_image"


class ParamKind(str, Enum):
    TEXT = "text"
    IMAGE_SOURCE = "image_source"
    OUTPUT_PATH = "output_path"


@dataclass(frozen=True)
class ToolParameter:
    name: str
    kind: ParamKind
    description: str
    required: bool = False
    default: str | None = None

    def to_json_schema(self) -> dict[str, Any]:
        prop: dict[str, Any] = {"type": "string", "description": self.description}
        if self.default is not None:
            prop["default"] = self.default
        return prop


@dataclass(frozen=True)
class ToolSchema:
    tool: Tool
    description: str
    mode: ApiMode
    parameters: tuple[ToolParameter, ...]

    @property
    def name(self) -> str:
        return self.tool.value

    @property
    def takes_source(self) -> bool:
        return any(p.kind is ParamKind.IMAGE_SOURCE for p in self.parameters)

    @property
    def writes_output(self) -> bool:
        return any(p.kind is ParamKind.OUTPUT_PATH for p in self.parameters)

    def to_mcp(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": {
                "type": "object",
                "properties": {p.name: p.to_json_schema() for p in self.parameters},
                "required": [p.name for p in self.parameters if p.required],
            },
        }


_SYSTEM_PROMPT = ToolParameter(
    name="system_prompt",
    kind=ParamKind.TEXT,
    description="Optional system prompt that steers the model",
)

TOOL_SCHEMAS: dict[Tool, ToolSchema] = {
    Tool.ANALYZE_IMAGE: ToolSchema(
        tool=Tool.ANALYZE_IMAGE,
        description=(
            "Analyze an image using Google's Gemini API. "
            "Supports both URLs (https) and local file paths."
        ),
        mode=ApiMode.ANALYZE,
        parameters=(
            ToolParameter(
                name="image_source",
                kind=ParamKind.IMAGE_SOURCE,
                description="Image source: an https URL or a local file path",
                required=True,
            ),
            _SYSTEM_PROMPT,
            ToolParameter(
                name="user_prompt",
                kind=ParamKind.TEXT,
                description="Instruction for the analysis",
                default=DEFAULT_CAPTION_PROMPT,
            ),
        ),
    ),
    Tool.GENERATE_IMAGE: ToolSchema(
        tool=Tool.GENERATE_IMAGE,
        description=(
            "Generate an image using Google's Gemini API from a required user prompt "
            "and an optional system prompt."
        ),
        mode=ApiMode.GENERATE,
        parameters=(
            _SYSTEM_PROMPT,
            ToolParameter(
                name="user_prompt",
                kind=ParamKind.TEXT,
                description="Description of the image to generate",
                required=True,
            ),
            ToolParameter(
                name="output_path",
                kind=ParamKind.OUTPUT_PATH,
                description="File path where the generated image is saved",
                required=True,
            ),
        ),
    ),
    Tool.EDIT_IMAGE: ToolSchema(
        tool=Tool.EDIT_IMAGE,
        description=(
            "Edit an existing image using Google's Gemini API from an input image "
            "and a prompt describing the desired changes."
        ),
        mode=ApiMode.EDIT,
        parameters=(
            ToolParameter(
                name="image_source",
                kind=ParamKind.IMAGE_SOURCE,
                description="Input image: an https URL or a local file path",
                required=True,
            ),
            _SYSTEM_PROMPT,
            ToolParameter(
                name="user_prompt",
                kind=ParamKind.TEXT,
                description="Description of the edits to apply",
                required=True,
            ),
            ToolParameter(
                name="output_path",
                kind=ParamKind.OUTPUT_PATH,
                description="File path where the edited image is saved",
                required=True,
            ),
        ),
    ),
}


def lookup_tool(name: str) -> ToolSchema:
    try:
        tool = Tool(name)
    except ValueError:
        raise ValidationError(f"Unknown tool: {name}", field="name") from None
    return TOOL_SCHEMAS[tool]


def list_tools() -> list[dict[str, Any]]:
    return [schema.to_mcp() for schema in TOOL_SCHEMAS.values()]
