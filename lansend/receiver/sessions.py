"""
Session Registry: receiver-side table of transfer sessions.

All methods are synchronous and run on the event loop thread, so each one
is atomic with respect to the upload tasks: a token is checked and consumed
without any suspension point in between.
"""

import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from lansend.config import SESSION_TIMEOUT
from lansend.discovery.models import DeviceInfo
from lansend.errors import (
    FileAlreadyReceived,
    SenderMismatch,
    SessionCancelled,
    SessionNotFound,
    TokenInvalid,
)
from lansend.transfer.models import (
    CancellationSignal,
    FileMetadata,
    FileStatus,
    SessionState,
    can_transition,
)

logger = logging.getLogger(__name__)


@dataclass
class ReceivingFile:
    metadata: FileMetadata
    token: str
    status: FileStatus = FileStatus.QUEUED
    bytes_received: int = 0
    temp_path: Path | None = None
    destination: Path | None = None


@dataclass
class ReceiveSession:
    session_id: str
    sender: DeviceInfo
    sender_ip: str
    requested: dict[str, FileMetadata]
    files: dict[str, ReceivingFile] = field(default_factory=dict)
    state: SessionState = SessionState.NEGOTIATING
    signal: CancellationSignal = field(default_factory=CancellationSignal)
    last_activity: float = field(default_factory=time.monotonic)
    closed_at: float | None = None

    def transition(self, new: SessionState) -> None:
        if new == self.state:
            return
        if not can_transition(self.state, new):
            raise ValueError(f"session {self.session_id}: {self.state.value} -> {new.value} not allowed")
        logger.debug(f"Session {self.session_id}: {self.state.value} -> {new.value}")
        self.state = new

    def touch(self, now: float | None = None) -> None:
        self.last_activity = time.monotonic() if now is None else now

    @property
    def finished(self) -> bool:
        return bool(self.files) and all(f.status.terminal for f in self.files.values())

    def final_state(self) -> SessionState:
        statuses = [f.status for f in self.files.values()]
        if any(s == FileStatus.CANCELLED for s in statuses):
            return SessionState.CANCELLED
        if statuses and all(s == FileStatus.FAILED for s in statuses):
            return SessionState.FAILED
        return SessionState.COMPLETED

    def tokens(self) -> dict[str, str]:
        return {file_id: f.token for file_id, f in self.files.items()}


class SessionRegistry:
    """Active sessions plus recently closed ones, kept to answer late requests."""

    def __init__(self, timeout: float = SESSION_TIMEOUT) -> None:
        self.timeout = timeout
        self._sessions: dict[str, ReceiveSession] = {}
        self._closed: dict[str, ReceiveSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> ReceiveSession | None:
        return self._sessions.get(session_id) or self._closed.get(session_id)

    def active(self) -> list[ReceiveSession]:
        return list(self._sessions.values())

    def create(
        self, sender: DeviceInfo, sender_ip: str, requested: dict[str, FileMetadata]
    ) -> ReceiveSession:
        session_id = str(uuid.uuid4())
        while session_id in self._sessions or session_id in self._closed:
            session_id = str(uuid.uuid4())

        session = ReceiveSession(
            session_id=session_id,
            sender=sender,
            sender_ip=sender_ip,
            requested=dict(requested),
        )
        self._sessions[session_id] = session
        logger.info(f"Session {session_id} opened by {sender.alias} ({sender_ip}), {len(requested)} file(s)")
        return session

    def accept(self, session_id: str, file_ids: set[str]) -> dict[str, str]:
        """Issue one single-use token per accepted file."""
        session = self._require_active(session_id)
        session.transition(SessionState.ACCEPTED)
        for file_id in file_ids:
            session.files[file_id] = ReceivingFile(
                metadata=session.requested[file_id],
                token=secrets.token_urlsafe(24),
            )
        session.touch()
        return session.tokens()

    def reject(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.transition(SessionState.REJECTED)
        self._close(session)

    def claim(
        self, session_id: str, file_id: str, token: str, sender_ip: str | None = None
    ) -> tuple[ReceiveSession, ReceivingFile]:
        """
        Redeem a token: on success the file moves to SENDING and belongs to the
        caller until `finish`.
        """
        session = self.get(session_id)
        if session is None:
            raise SessionNotFound()
        if session.state == SessionState.CANCELLED or session.signal.is_set():
            raise SessionCancelled()
        if sender_ip is not None and sender_ip != session.sender_ip:
            raise SenderMismatch()

        entry = session.files.get(file_id)
        if entry is None or not secrets.compare_digest(entry.token, token):
            raise TokenInvalid()
        if entry.status in (FileStatus.SENDING, FileStatus.COMPLETED):
            raise FileAlreadyReceived()
        if entry.status != FileStatus.QUEUED or session.closed_at is not None:
            raise TokenInvalid("token already used or expired")

        entry.status = FileStatus.SENDING
        if session.state == SessionState.ACCEPTED:
            session.transition(SessionState.TRANSFERRING)
        session.touch()
        return session, entry

    def finish(
        self,
        session: ReceiveSession,
        file_id: str,
        status: FileStatus,
        destination: Path | None = None,
    ) -> None:
        """Mark a claimed file terminal; closes the session once every file is."""
        entry = session.files[file_id]
        if entry.status.terminal:
            return
        entry.status = status
        entry.destination = destination
        entry.temp_path = None
        session.touch()

        if session.finished and session.closed_at is None:
            session.transition(session.final_state())
            self._close(session)

    def cancel(self, session_id: str) -> ReceiveSession | None:
        """
        Cancel a session: tokens die, in-flight writers see the signal, and
        temporary files are removed. Cancelling a closed session is a no-op.
        """
        session = self.get(session_id)
        if session is None:
            return None
        if session.closed_at is not None:
            return session

        session.signal.set()
        for entry in session.files.values():
            if not entry.status.terminal:
                entry.status = FileStatus.CANCELLED
            _discard(entry)
        session.transition(SessionState.CANCELLED)
        self._close(session)
        logger.info(f"Session {session_id} cancelled")
        return session

    def collect_garbage(self, now: float | None = None) -> list[ReceiveSession]:
        """
        Expire sessions idle for longer than the timeout and forget closed
        sessions after the same retention. Returns the expired sessions.
        """
        now = time.monotonic() if now is None else now
        expired = [
            s for s in self._sessions.values()
            if now - s.last_activity > self.timeout
        ]
        for session in expired:
            logger.info(f"Session {session.session_id} expired after inactivity")
            session.signal.set()
            for entry in session.files.values():
                if not entry.status.terminal:
                    entry.status = FileStatus.FAILED
                _discard(entry)
            session.transition(SessionState.FAILED)
            self._close(session, now)

        for session_id, session in list(self._closed.items()):
            if now - session.closed_at > self.timeout:
                del self._closed[session_id]
        return expired

    def _require_active(self, session_id: str) -> ReceiveSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound()
        return session

    def _close(self, session: ReceiveSession, now: float | None = None) -> None:
        session.closed_at = time.monotonic() if now is None else now
        self._sessions.pop(session.session_id, None)
        self._closed[session.session_id] = session
        logger.info(f"Session {session.session_id} closed as {session.state.value}")


def _discard(entry: ReceivingFile) -> None:
    if entry.temp_path is None:
        return
    try:
        entry.temp_path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove {entry.temp_path}: {e}")
