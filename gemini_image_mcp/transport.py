import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator
from typing import Any, BinaryIO

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_BYTES = 4 * 1024 * 1024


class LineTransport:
    """Newline-delimited JSON over a pair of byte streams.

    Reading is sequential; writes are serialized so concurrent responses
    never interleave.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: BinaryIO) -> None:
        self._reader = reader
        self._writer = writer
        self._write_lock = asyncio.Lock()

    async def messages(self) -> AsyncIterator[str]:
        discarding = False
        while True:
            try:
                line = await self._reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                # End of input; a final line may lack its newline.
                if exc.partial and not discarding:
                    text = exc.partial.decode("utf-8", errors="replace").strip()
                    if text:
                        yield text
                return
            except asyncio.LimitOverrunError as exc:
                # Drop what is buffered and skip the rest of the line up to its newline.
                if not discarding:
                    logger.warning("dropping message over the size limit")
                discarding = True
                await self._reader.readexactly(exc.consumed)
                continue

            if discarding:
                discarding = False
                continue
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                yield text

    async def send(self, payload: dict[str, Any]) -> None:
        data = json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"
        async with self._write_lock:
            self._writer.write(data.encode("utf-8"))
            self._writer.flush()


async def open_stdio_transport(max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES) -> LineTransport:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=max_message_bytes)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return LineTransport(reader, sys.stdout.buffer)
