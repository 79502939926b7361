import argparse
import asyncio
import contextlib
import logging
import signal

from gemini_image_mcp.acquisition import ImageAcquirer
from gemini_image_mcp.config import Settings, resolve_api_key, settings
from gemini_image_mcp.gemini_client import GeminiClient
from gemini_image_mcp.observability import configure_logging
from gemini_image_mcp.retry import RetryPolicy
from gemini_image_mcp.server import SERVER_VERSION, Dispatcher, serve
from gemini_image_mcp.tools import ToolRunner
from gemini_image_mcp.transport import open_stdio_transport
from gemini_image_mcp.validation import ArgumentValidator

logger = logging.getLogger(__name__)


def build_dispatcher(
    config: Settings,
    api_key: str | None,
    strict_lifecycle: bool | None = None,
) -> Dispatcher:
    client = GeminiClient(
        api_key=api_key,
        base_url=config.gemini_base_url,
        caption_model=config.gemini_caption_model,
        image_model=config.gemini_image_model,
        timeout_s=config.api_timeout_s,
        retry_policy=RetryPolicy(
            max_attempts=config.retry_max_attempts,
            base_delay_s=config.retry_base_delay_s,
            max_delay_s=config.retry_max_delay_s,
        ),
    )
    runner = ToolRunner(
        client=client,
        acquirer=ImageAcquirer(max_bytes=config.max_image_bytes, timeout_s=config.fetch_timeout_s),
        validator=ArgumentValidator(
            max_prompt_chars=config.max_prompt_chars,
            allow_http_sources=config.allow_http_sources,
        ),
    )
    strict = config.strict_lifecycle if strict_lifecycle is None else strict_lifecycle
    return Dispatcher(runner, strict_lifecycle=strict)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="gemini-image-mcp",
        description="MCP server exposing Gemini image analysis, generation and editing",
    )
    parser.add_argument(
        "--gemini-api-key",
        metavar="KEY",
        help="Override the GEMINI_API_KEY environment variable with this API key",
    )
    parser.add_argument(
        "--strict-lifecycle",
        action="store_true",
        default=None,
        help="Reject tools/call until the client has sent initialize",
    )
    parser.add_argument("--transport", choices=("stdio", "http"), default="stdio")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8100)
    parser.add_argument("--version", action="version", version=f"%(prog)s {SERVER_VERSION}")
    return parser.parse_args(argv)


async def run_stdio(dispatcher: Dispatcher, max_message_bytes: int) -> None:
    transport = await open_stdio_transport(max_message_bytes)
    serve_task = asyncio.create_task(serve(transport, dispatcher))
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, serve_task.cancel)
    with contextlib.suppress(asyncio.CancelledError):
        await serve_task


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(settings)

    api_key = resolve_api_key(args.gemini_api_key, settings.gemini_api_key)
    if api_key is None:
        logger.warning("no Gemini API key configured; tool calls will fail until one is provided")
    elif args.gemini_api_key is not None:
        logger.info("using API key provided via command line")
    else:
        logger.info("using API key from GEMINI_API_KEY")

    dispatcher = build_dispatcher(settings, api_key, strict_lifecycle=args.strict_lifecycle)
    logger.info("starting gemini-image-mcp over %s", args.transport)

    if args.transport == "http":
        import uvicorn

        from gemini_image_mcp.http_app import create_app

        uvicorn.run(create_app(dispatcher), host=args.host, port=args.port, log_config=None)
    else:
        asyncio.run(run_stdio(dispatcher, settings.max_message_bytes))
    logger.info("shutting down gemini-image-mcp")


if __name__ == "__main__":
    main()
