import asyncio
import base64
import binascii
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from gemini_image_mcp.errors import (
    ConfigurationError,
    MalformedUpstreamResponse,
    UpstreamApiError,
    UpstreamAuthError,
    UpstreamRateLimited,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from gemini_image_mcp.retry import RetryPolicy, call_with_retry
from gemini_image_mcp.schemas import ApiMode, ApiRequest, ApiResult, Caption, ImageBytes

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_CAPTION_MODEL = "gemini-2.5-flash"
DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image-preview"


class GeminiClient:
    def __init__(
        self,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        caption_model: str = DEFAULT_CAPTION_MODEL,
        image_model: str = DEFAULT_IMAGE_MODEL,
        timeout_s: float = 60.0,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._api_key = api_key.strip() if api_key else ""
        self.base_url = base_url.rstrip("/")
        self.caption_model = caption_model
        self.image_model = image_model
        self.timeout_s = timeout_s
        self.retry_policy = retry_policy or RetryPolicy()
        self._transport = transport
        self._sleep = sleep or asyncio.sleep

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def require_credential(self) -> None:
        if not self._api_key:
            raise ConfigurationError(
                "GEMINI_API_KEY is not set; pass --gemini-api-key or set the environment variable"
            )

    async def generate(self, request: ApiRequest) -> ApiResult:
        self.require_credential()
        url = self._endpoint(request.mode)
        body = build_request_body(request)

        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:

            async def send_once() -> dict[str, Any]:
                return await self._post(client, url, body)

            data = await call_with_retry(self.retry_policy, send_once, sleep=self._sleep)

        return parse_response(request.mode, data)

    def _endpoint(self, mode: ApiMode) -> str:
        model = self.caption_model if mode is ApiMode.ANALYZE else self.image_model
        return f"{self.base_url}/models/{model}:generateContent"

    async def _post(self, client: httpx.AsyncClient, url: str, body: dict) -> dict[str, Any]:
        headers = {
            "x-goog-api-key": self._api_key,
            "Content-Type": "application/json",
        }
        try:
            response = await client.post(url, headers=headers, json=body)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"Gemini API request timed out: {type(exc).__name__}") from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailable(
                f"Gemini API unreachable: {type(exc).__name__}", cause=self._redact(str(exc))
            ) from exc

        if not response.is_success:
            self._raise_for_status(response)

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedUpstreamResponse("Gemini API returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise MalformedUpstreamResponse("Gemini API returned a non-object JSON body")

        error = data.get("error")
        if isinstance(error, dict):
            raise UpstreamApiError(
                f"Gemini API error ({error.get('code', 0)}): "
                f"{self._redact(str(error.get('message', 'Unknown error')))}",
                status=None,
            )
        return data

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        detail = self._redact(_error_message(response))
        logger.warning("Gemini API returned status %d", status, extra={"status_code": status})
        if status in (401, 403):
            raise UpstreamAuthError(
                f"Gemini API rejected the credential (HTTP {status})", status=status
            )
        if status == 429:
            raise UpstreamRateLimited("Gemini API rate limit exceeded", status=status)
        raise UpstreamApiError(f"Gemini API error ({status}): {detail}", status=status)

    def _redact(self, text: str) -> str:
        if self._api_key and self._api_key in text:
            return text.replace(self._api_key, "***")
        return text


def build_request_body(request: ApiRequest) -> dict[str, Any]:
    parts: list[dict[str, Any]] = []
    if request.system_prompt:
        parts.append({"text": request.system_prompt})

    if request.mode is ApiMode.ANALYZE:
        parts.append(_inline_part(request))
        parts.append({"text": request.prompt})
    elif request.mode is ApiMode.EDIT:
        parts.append({"text": request.prompt})
        parts.append(_inline_part(request))
    else:
        parts.append({"text": request.prompt})

    return {"contents": [{"parts": parts}]}


def _inline_part(request: ApiRequest) -> dict[str, Any]:
    if request.image is None:
        raise ValueError(f"{request.mode.value} request requires an input image")
    return {
        "inlineData": {
            "mimeType": request.image.mime_type,
            "data": base64.b64encode(request.image.data).decode("ascii"),
        }
    }


def parse_response(mode: ApiMode, data: dict[str, Any]) -> ApiResult:
    parts = _candidate_parts(data)
    if mode is ApiMode.ANALYZE:
        for part in parts:
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                return Caption(text=text)
        raise MalformedUpstreamResponse("No text found in Gemini API response")

    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if not isinstance(inline, dict):
            continue
        encoded = inline.get("data")
        if not isinstance(encoded, str) or not encoded:
            continue
        try:
            image = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedUpstreamResponse("Gemini API returned undecodable image data") from exc
        mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
        return ImageBytes(data=image, mime_type=mime_type)
    raise MalformedUpstreamResponse("No image data found in Gemini API response")


def _candidate_parts(data: dict[str, Any]) -> list[dict[str, Any]]:
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        feedback = data.get("promptFeedback")
        if isinstance(feedback, dict) and feedback.get("blockReason"):
            raise UpstreamApiError(f"Request blocked: {feedback['blockReason']}")
        raise MalformedUpstreamResponse("No candidates in Gemini API response")

    first = candidates[0] if isinstance(candidates[0], dict) else {}
    content = first.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list) or not parts:
        raise MalformedUpstreamResponse("No parts in Gemini API candidate content")
    return [part for part in parts if isinstance(part, dict)]


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return str(payload["error"].get("message", ""))
    return response.text[:500]
