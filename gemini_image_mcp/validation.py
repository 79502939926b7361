import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from gemini_image_mcp.errors import ValidationError
from gemini_image_mcp.registry import ParamKind, ToolParameter, ToolSchema
from gemini_image_mcp.schemas import ImageSource, LocalSource, RemoteSource

MAX_LOCATION_CHARS = 2048
OUTPUT_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tiff", ".tif")


@dataclass(frozen=True)
class ToolCall:
    """Arguments of one tools/call after shape checks and default substitution."""

    schema: ToolSchema
    user_prompt: str
    system_prompt: str | None = None
    image_source: ImageSource | None = None
    output_path: Path | None = None


def parse_image_source(raw: str) -> ImageSource:
    # Single-letter schemes are Windows drive letters, not URLs.
    scheme = urlparse(raw).scheme
    if len(scheme) > 1:
        return RemoteSource(url=raw)
    return LocalSource(path=Path(raw).expanduser())


class ArgumentValidator:
    def __init__(self, max_prompt_chars: int = 2000, allow_http_sources: bool = False) -> None:
        self.max_prompt_chars = max_prompt_chars
        self.allowed_schemes = {"https", "http"} if allow_http_sources else {"https"}

    def validate(self, schema: ToolSchema, arguments: Any) -> ToolCall:
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ValidationError("Tool arguments must be an object", field="arguments")

        values: dict[str, Any] = {}
        for param in schema.parameters:
            raw = arguments.get(param.name)
            if not param.required and isinstance(raw, str) and not raw.strip():
                raw = None
            if raw is None:
                if param.required:
                    raise ValidationError(
                        f"Missing required argument: {param.name}", field=param.name
                    )
                values[param.name] = param.default
                continue
            values[param.name] = self._check(param, raw)

        return ToolCall(
            schema=schema,
            user_prompt=values.get("user_prompt") or "",
            system_prompt=values.get("system_prompt"),
            image_source=values.get("image_source"),
            output_path=values.get("output_path"),
        )

    def _check(self, param: ToolParameter, raw: Any) -> Any:
        if not isinstance(raw, str):
            raise ValidationError(f"Argument '{param.name}' must be a string", field=param.name)
        if param.required and not raw.strip():
            raise ValidationError(f"Argument '{param.name}' cannot be empty", field=param.name)

        if param.kind is ParamKind.TEXT:
            if len(raw) > self.max_prompt_chars:
                raise ValidationError(
                    f"Argument '{param.name}' too long (max {self.max_prompt_chars} characters)",
                    field=param.name,
                )
            return raw
        if param.kind is ParamKind.IMAGE_SOURCE:
            return self._check_source(param.name, raw)
        return self._check_output_path(param.name, raw)

    def _check_source(self, name: str, raw: str) -> ImageSource:
        if len(raw) > MAX_LOCATION_CHARS:
            raise ValidationError(
                f"Argument '{name}' too long (max {MAX_LOCATION_CHARS} characters)", field=name
            )
        source = parse_image_source(raw.strip())
        if isinstance(source, RemoteSource):
            parsed = urlparse(source.url)
            if parsed.scheme.lower() not in self.allowed_schemes:
                allowed = ", ".join(sorted(self.allowed_schemes))
                raise ValidationError(
                    f"Unsupported URL scheme '{parsed.scheme}' (allowed: {allowed})", field=name
                )
            if not parsed.netloc:
                raise ValidationError(f"Invalid URL: {source.url}", field=name)
        return source

    def _check_output_path(self, name: str, raw: str) -> Path:
        if len(raw) > MAX_LOCATION_CHARS:
            raise ValidationError(
                f"Argument '{name}' too long (max {MAX_LOCATION_CHARS} characters)", field=name
            )
        path = Path(raw.strip()).expanduser()
        if path.suffix.lower() not in OUTPUT_EXTENSIONS:
            allowed = ", ".join(ext.lstrip(".") for ext in OUTPUT_EXTENSIONS)
            raise ValidationError(
                f"Unsupported output file extension. Allowed: {allowed}", field=name
            )
        if path.is_dir():
            raise ValidationError(f"Output path is a directory: {path}", field=name)

        parent = path.parent
        if not parent.is_dir():
            raise ValidationError(f"Parent directory does not exist: {parent}", field=name)
        if not os.access(parent, os.W_OK | os.X_OK):
            raise ValidationError(f"Parent directory is not writable: {parent}", field=name)
        return path
