import asyncio
import contextlib
import os
import tempfile
from pathlib import Path

from gemini_image_mcp.errors import OutputWriteError

# mkstemp creates files as 0600; new outputs get the usual umask-derived mode.
_UMASK = os.umask(0)
os.umask(_UMASK)


def _output_mode(path: Path) -> int:
    try:
        return path.stat().st_mode & 0o7777
    except FileNotFoundError:
        return 0o666 & ~_UMASK


def write_atomic(path: Path, data: bytes) -> Path:
    """Replace ``path`` with ``data`` so readers see either the old file or the new one.

    The bytes go to a temporary file in the target directory, which is then
    renamed over the target. The temporary file never outlives a failure.
    """
    directory = path.parent if str(path.parent) else Path(".")
    tmp_name: str | None = None
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=directory)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fchmod(handle.fileno(), _output_mode(path))
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise OutputWriteError(
            f"Failed to write image file {path}: {exc.strerror or exc}", cause=str(exc)
        ) from exc
    finally:
        if tmp_name is not None:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
    return path


async def save_image(path: Path, data: bytes) -> Path:
    return await asyncio.to_thread(write_atomic, path, data)
