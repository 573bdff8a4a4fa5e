"""
Outgoing files: the manifest builder and the byte sources behind it.
"""

import asyncio
import hashlib
import logging
import os
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

from lansend.config import CHUNK_SIZE, TEXT_PREVIEW_LIMIT
from lansend.discovery.models import DeviceInfo
from lansend.transfer.models import FileMetadata, FileType, TransferManifest

logger = logging.getLogger(__name__)


class ByteSource:
    """Something that can be read as a sequence of chunks."""

    def chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        raise NotImplementedError


class PathSource(ByteSource):
    """A file on disk, read off the event loop."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    async def chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        f = await asyncio.to_thread(open, self.path, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(f.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            f.close()


class BytesSource(ByteSource):
    """An in-memory buffer, e.g. a text message."""

    def __init__(self, data: bytes) -> None:
        self.data = data

    async def chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        for offset in range(0, len(self.data), chunk_size):
            yield self.data[offset:offset + chunk_size]


@dataclass
class SendingFile:
    metadata: FileMetadata
    source: ByteSource

    @property
    def id(self) -> str:
        return self.metadata.id


class SendingFiles:
    """Ordered set of files for one send operation."""

    def __init__(self) -> None:
        self.files: dict[str, SendingFile] = {}

    def __len__(self) -> int:
        return len(self.files)

    def __iter__(self):
        return iter(self.files.values())

    def get(self, file_id: str) -> SendingFile | None:
        return self.files.get(file_id)

    def source(self, file_id: str) -> ByteSource:
        return self.files[file_id].source

    def _add(self, metadata: FileMetadata, source: ByteSource) -> str:
        self.files[metadata.id] = SendingFile(metadata=metadata, source=source)
        return metadata.id

    def add_file(self, path: str | os.PathLike, file_name: str | None = None) -> str | None:
        """Add a single file; empty files cannot be announced and are skipped."""
        path = Path(path)
        size = path.stat().st_size
        file_name = file_name or path.name
        if size == 0:
            logger.warning(f"Skipping empty file: {path}")
            return None

        metadata = FileMetadata(
            id=str(uuid.uuid4()),
            file_name=file_name,
            size=size,
            file_type=FileType.guess(file_name),
        )
        logger.debug(f"Added file {file_name} ({size} bytes)")
        return self._add(metadata, PathSource(path))

    def add_dir(self, path: str | os.PathLike) -> list[str]:
        """Add every file below `path`, named relative to the directory's parent."""
        root = Path(path).resolve()
        base = root.parent
        added = []
        for dirpath, _, filenames in os.walk(root):
            for name in sorted(filenames):
                entry = Path(dirpath) / name
                if not entry.is_file():
                    continue
                relative = entry.relative_to(base).as_posix()
                file_id = self.add_file(entry, relative)
                if file_id:
                    added.append(file_id)
        return added

    def add_text(self, text: str, preview: bool | None = None) -> str:
        """Add a text message as a synthetic .txt file."""
        data = text.encode("utf-8")
        if not data:
            raise ValueError("cannot send an empty message")
        digest = hashlib.sha256(data).hexdigest()
        if preview is None:
            preview = len(data) < TEXT_PREVIEW_LIMIT

        metadata = FileMetadata(
            id=str(uuid.uuid4()),
            file_name=f"{digest[:32]}.txt",
            size=len(data),
            file_type=FileType.TEXT,
            sha256=digest,
            preview=text if preview else None,
        )
        return self._add(metadata, BytesSource(data))

    def manifest(self, info: DeviceInfo) -> TransferManifest:
        """Freeze the current file set into a prepare-upload request."""
        return TransferManifest(
            info=info,
            files={file_id: f.metadata for file_id, f in self.files.items()},
        )
