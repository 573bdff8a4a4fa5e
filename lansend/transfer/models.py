"""Pydantic models for file transfer."""

import asyncio
import mimetypes
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from lansend.discovery.models import DeviceInfo, WireModel


class FileType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    PDF = "pdf"
    TEXT = "text"
    APK = "apk"
    OTHER = "other"

    @classmethod
    def guess(cls, file_name: str) -> "FileType":
        mime = guess_mime(file_name)
        major, _, minor = mime.partition("/")
        if major == "image":
            return cls.IMAGE
        if major == "video":
            return cls.VIDEO
        if major == "text":
            return cls.TEXT
        if mime == "application/pdf":
            return cls.PDF
        if minor == "vnd.android.package-archive":
            return cls.APK
        return cls.OTHER


def guess_mime(file_name: str) -> str:
    if file_name.lower().endswith(".apk"):
        return "application/vnd.android.package-archive"
    mime, _ = mimetypes.guess_type(file_name, strict=False)
    return mime or "application/octet-stream"


class FileMetadata(WireModel):
    """Describes one file of a transfer manifest."""
    id: str = Field(min_length=1)
    file_name: str = Field(min_length=1)
    size: int = Field(gt=0)
    file_type: FileType = FileType.OTHER
    sha256: str | None = None
    preview: str | None = None


class PrepareUploadRequest(WireModel):
    """The transfer manifest: sender info plus file-id -> metadata."""
    info: DeviceInfo
    files: dict[str, FileMetadata]

    @model_validator(mode="after")
    def _ids_match_keys(self):
        for file_id, meta in self.files.items():
            if file_id != meta.id:
                raise ValueError(f"file key {file_id!r} does not match id {meta.id!r}")
        return self


TransferManifest = PrepareUploadRequest


class PrepareUploadResponse(WireModel):
    """Receiver's answer: session id plus file-id -> token for accepted files."""
    session_id: str = Field(min_length=1)
    files: dict[str, str]


class SessionState(str, Enum):
    """Lifecycle of a transfer session, on either side."""
    NEGOTIATING = "negotiating"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_SESSION_STATES


_TERMINAL_SESSION_STATES = {
    SessionState.REJECTED,
    SessionState.COMPLETED,
    SessionState.CANCELLED,
    SessionState.FAILED,
}

# Monotone: nothing goes back to NEGOTIATING, terminal states are final
SESSION_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.NEGOTIATING: {
        SessionState.ACCEPTED, SessionState.REJECTED,
        SessionState.CANCELLED, SessionState.FAILED,
    },
    SessionState.ACCEPTED: {
        SessionState.TRANSFERRING, SessionState.COMPLETED,
        SessionState.CANCELLED, SessionState.FAILED,
    },
    SessionState.TRANSFERRING: {
        SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED,
    },
}


def can_transition(current: SessionState, new: SessionState) -> bool:
    return new in SESSION_TRANSITIONS.get(current, set())


class FileStatus(str, Enum):
    """Per-file status within a session."""
    QUEUED = "queued"
    SENDING = "sending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def terminal(self) -> bool:
        return self not in (FileStatus.QUEUED, FileStatus.SENDING)


class TransferProgress(BaseModel):
    """Progress of one file; aggregated by the caller, never persisted."""
    file_id: str
    bytes_transferred: int = 0
    bytes_total: int

    @property
    def percent(self) -> float:
        if self.bytes_total <= 0:
            return 100.0
        return self.bytes_transferred / self.bytes_total * 100


class TransferEvent(BaseModel):
    """
    One event on the executor's channel.

    `status` is SENDING for progress updates (with `delta` bytes since the
    previous one) and a terminal FileStatus otherwise.
    """
    model_config = ConfigDict(frozen=True)

    session_id: str
    file_id: str
    status: FileStatus
    bytes_transferred: int = 0
    bytes_total: int = 0
    delta: int = 0
    error_message: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status.terminal


class CancellationSignal:
    """Shared per-session flag; once set, every file task of the session stops."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
