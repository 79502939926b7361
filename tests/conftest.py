import os

import httpx
import pytest

# Keep tests deterministic and offline-safe.
os.environ["GEMINI_API_KEY"] = ""
os.environ["LOG_JSON"] = "false"
os.environ["MCP_STRICT_LIFECYCLE"] = "false"
os.environ["MCP_ALLOW_HTTP_SOURCES"] = "false"

from gemini_image_mcp.acquisition import ImageAcquirer  # noqa: E402
from gemini_image_mcp.gemini_client import GeminiClient  # noqa: E402
from gemini_image_mcp.retry import RetryPolicy  # noqa: E402
from gemini_image_mcp.server import Dispatcher  # noqa: E402
from gemini_image_mcp.tools import ToolRunner  # noqa: E402
from gemini_image_mcp.validation import ArgumentValidator  # noqa: E402

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + b"\x01" * 24
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00\x10JFIF" + b"\x02" * 24


async def no_sleep(_delay: float) -> None:
    return None


def _unexpected_source(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected source fetch: {request.url}")


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def jpeg_bytes() -> bytes:
    return JPEG_BYTES


@pytest.fixture
def make_dispatcher():
    def _make(
        upstream,
        source=None,
        api_key: str | None = "test-key",
        strict_lifecycle: bool = False,
        max_attempts: int = 3,
        max_image_bytes: int = 20 * 1024 * 1024,
    ) -> Dispatcher:
        client = GeminiClient(
            api_key=api_key,
            retry_policy=RetryPolicy(max_attempts=max_attempts, jitter_s=0.0),
            transport=httpx.MockTransport(upstream),
            sleep=no_sleep,
        )
        acquirer = ImageAcquirer(
            max_bytes=max_image_bytes,
            transport=httpx.MockTransport(source or _unexpected_source),
        )
        runner = ToolRunner(client=client, acquirer=acquirer, validator=ArgumentValidator())
        return Dispatcher(runner, strict_lifecycle=strict_lifecycle)

    return _make
