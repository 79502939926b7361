from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class McpRpcRequest(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"
    id: str | int | float | None = None
    method: str
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _scalar_id(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (str, int, float, type(None))):
            raise ValueError("id must be a string, a number or null")
        return value

    @field_validator("params", mode="before")
    @classmethod
    def _params_object(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def is_notification(self) -> bool:
        return self.id is None


class McpRpcResponse(BaseModel):
    jsonrpc: str = "2.0"
    id: Any = None
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            payload["error"] = self.error
        else:
            payload["result"] = self.result if self.result is not None else {}
        return payload


class ApiMode(str, Enum):
    ANALYZE = "analyze"
    GENERATE = "generate"
    EDIT = "edit"


@dataclass(frozen=True)
class RemoteSource:
    url: str


@dataclass(frozen=True)
class LocalSource:
    path: Path


ImageSource = RemoteSource | LocalSource


@dataclass(frozen=True)
class ImageAsset:
    data: bytes
    mime_type: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ApiRequest:
    mode: ApiMode
    prompt: str
    system_prompt: str | None = None
    image: ImageAsset | None = None


@dataclass(frozen=True)
class Caption:
    text: str


@dataclass(frozen=True)
class ImageBytes:
    data: bytes
    mime_type: str


ApiResult = Caption | ImageBytes
