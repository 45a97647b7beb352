"""
Local file storage for imported recordings and generated exports.
"""

import hashlib
import logging
import os
import re
import time
import uuid
from typing import AsyncIterator, Optional, Tuple

import aiofiles
import aiofiles.os

from utils.errors import NotFoundError, RangeNotSatisfiable, StorageError, ValidationError

logger = logging.getLogger(__name__)

RECORDING_EXTENSIONS = {
    "MP4": "mp4",
    "M4A": "m4a",
    "TRANSCRIPT": "vtt",
    "CC": "vtt",
    "CHAT": "txt",
    "CSV": "csv",
}

CONTENT_TYPES = {
    "mp4": "video/mp4",
    "m4a": "audio/mp4",
    "vtt": "text/vtt",
    "txt": "text/plain",
    "csv": "text/csv",
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "md": "text/markdown",
    "json": "application/json",
}

CHUNK_SIZE = 64 * 1024
_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def extension_for(file_type: Optional[str]) -> str:
    return RECORDING_EXTENSIONS.get((file_type or "").upper(), "bin")


def content_type_for(file_name: str) -> str:
    ext = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    return CONTENT_TYPES.get(ext, "application/octet-stream")


def parse_range(header: Optional[str], file_size: int) -> Optional[Tuple[int, int]]:
    """Parse a single ``bytes=`` range into an inclusive (start, end) pair.

    Returns ``None`` when no range was requested.
    """
    if not header:
        return None
    match = re.fullmatch(r"\s*bytes=(\d*)-(\d*)\s*", header)
    if not match or (not match.group(1) and not match.group(2)):
        raise RangeNotSatisfiable(file_size)

    start_text, end_text = match.groups()
    if not start_text:
        # Suffix range: the last N bytes.
        length = int(end_text)
        if length == 0:
            raise RangeNotSatisfiable(file_size)
        start = max(file_size - length, 0)
        end = file_size - 1
    else:
        start = int(start_text)
        end = int(end_text) if end_text else file_size - 1
        end = min(end, file_size - 1)

    if start >= file_size or start > end:
        raise RangeNotSatisfiable(file_size)
    return start, end


class StorageService:
    """Stores files under ``<root>/recordings`` and ``<root>/exports``."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        self.recordings_dir = os.path.join(self.root, "recordings")
        self.exports_dir = os.path.join(self.root, "exports")
        os.makedirs(self.recordings_dir, exist_ok=True)
        os.makedirs(self.exports_dir, exist_ok=True)

    def _resolve(self, directory: str, file_name: str) -> str:
        if not file_name or not _SAFE_NAME.match(file_name) or ".." in file_name:
            raise ValidationError("Invalid file name")
        path = os.path.abspath(os.path.join(directory, file_name))
        if os.path.dirname(path) != directory:
            raise ValidationError("Invalid file name")
        return path

    def recording_path(self, file_name: str) -> str:
        return self._resolve(self.recordings_dir, file_name)

    def export_path(self, file_name: str) -> str:
        return self._resolve(self.exports_dir, file_name)

    @staticmethod
    def recording_file_name(meeting_id: str, file_type: str, digest: str) -> str:
        # The random suffix keeps concurrent imports of identical bytes apart.
        suffix = uuid.uuid4().hex[:6]
        return f"recording-{meeting_id}-{int(time.time() * 1000)}-{digest[:8]}{suffix}.{extension_for(file_type)}"

    async def _write_atomic(self, path: str, content: bytes) -> None:
        # The final name only appears once the bytes are fully on disk.
        tmp_path = f"{path}.part"
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(content)
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            await self._remove_quietly(tmp_path)
            raise StorageError("Failed to write file to storage")

    async def _remove_quietly(self, path: str) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")

    async def save_recording_stream(
        self, meeting_id: str, file_type: str, chunks: AsyncIterator[bytes]
    ) -> Tuple[str, int]:
        """Write a recording as its chunks arrive and return ``(file_name, size)``.

        The file is hashed while it is written, so it is never held in memory
        whole. It only appears under its final name once the stream is
        exhausted; a failed or abandoned stream leaves nothing behind.
        """
        tmp_path = os.path.join(self.recordings_dir, f"incoming-{uuid.uuid4().hex}.part")
        digest = hashlib.sha256()
        size = 0
        completed = False
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                async for chunk in chunks:
                    digest.update(chunk)
                    size += len(chunk)
                    await f.write(chunk)
            file_name = self.recording_file_name(meeting_id, file_type, digest.hexdigest())
            await aiofiles.os.replace(tmp_path, self.recording_path(file_name))
            completed = True
        except OSError as e:
            logger.error(f"Failed to write recording for meeting {meeting_id}: {e}")
            raise StorageError("Failed to write file to storage")
        finally:
            if not completed:
                if hasattr(chunks, "aclose"):
                    await chunks.aclose()
                await self._remove_quietly(tmp_path)
        return file_name, size

    async def save_export(self, file_name: str, content: bytes) -> str:
        await self._write_atomic(self.export_path(file_name), content)
        return file_name

    async def delete_recording(self, file_name: Optional[str]) -> None:
        if file_name:
            await self._remove_quietly(self.recording_path(file_name))

    async def delete_export(self, file_name: Optional[str]) -> None:
        if file_name:
            await self._remove_quietly(self.export_path(file_name))

    async def file_size(self, path: str) -> int:
        try:
            stat = await aiofiles.os.stat(path)
        except FileNotFoundError:
            raise NotFoundError("File not found")
        return stat.st_size

    async def read_file(self, path: str) -> bytes:
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            raise NotFoundError("File not found")

    async def iter_file(self, path: str, start: int = 0, end: Optional[int] = None) -> AsyncIterator[bytes]:
        """Stream ``path`` from ``start`` to ``end`` inclusive in chunks."""
        async with aiofiles.open(path, "rb") as f:
            await f.seek(start)
            remaining = None if end is None else end - start + 1
            while remaining is None or remaining > 0:
                size = CHUNK_SIZE if remaining is None else min(CHUNK_SIZE, remaining)
                chunk = await f.read(size)
                if not chunk:
                    break
                if remaining is not None:
                    remaining -= len(chunk)
                yield chunk
