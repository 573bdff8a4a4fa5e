"""
Receiver Service: accepts incoming manifests and streams uploads to disk.

Each upload is written to a temporary file next to its destination and
renamed into place only once the declared size (and hash, when given) has
been met. Temporary files belong to their upload task until then.
"""

import asyncio
import hashlib
import logging
import os
import time
from collections.abc import AsyncIterator
from pathlib import Path, PurePosixPath

from lansend.config import DECISION_TIMEOUT, GC_INTERVAL, Settings
from lansend.errors import (
    IntegrityError,
    InvalidRequest,
    NothingSelected,
    SessionCancelled,
    SessionDeclined,
    SenderMismatch,
    SizeExceeded,
    SizeMismatch,
    TransferIOError,
)
from lansend.receiver.decision import (
    DecisionProvider,
    IncomingRequest,
    InteractiveDecision,
    QuickSaveDecision,
)
from lansend.receiver.sessions import ReceiveSession, ReceivingFile, SessionRegistry
from lansend.transfer.models import (
    FileMetadata,
    FileStatus,
    PrepareUploadRequest,
    PrepareUploadResponse,
    SessionState,
)

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 0.2  # seconds between progress events per file


def safe_relative_path(file_name: str) -> PurePosixPath:
    """Strip absolute prefixes and parent references from a sender-chosen name."""
    parts = [
        p for p in PurePosixPath(file_name.replace("\\", "/")).parts
        if p not in ("", ".", "..", "/")
    ]
    if not parts:
        raise InvalidRequest(f"invalid file name: {file_name!r}")
    return PurePosixPath(*parts)


class ReceiverService:
    """prepare_upload / upload / cancel, plus garbage collection of old sessions."""

    def __init__(
        self,
        settings: Settings,
        decision: DecisionProvider | None = None,
        sessions: SessionRegistry | None = None,
        decision_timeout: float = DECISION_TIMEOUT,
    ) -> None:
        self.settings = settings
        if decision is None:
            decision = QuickSaveDecision() if settings.quick_save else InteractiveDecision()
        self.decision = decision
        self.sessions = sessions if sessions is not None else SessionRegistry()
        self.decision_timeout = decision_timeout
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._background: set[asyncio.Task] = set()
        self._gc_task: asyncio.Task | None = None

    @property
    def destination(self) -> Path:
        return Path(self.settings.destination)

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def _emit_nowait(self, event_type: str, data: dict) -> None:
        """Fire-and-forget, so a slow consumer never holds up a write."""
        if not self._event_callbacks:
            return
        task = asyncio.create_task(self._emit(event_type, data))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def start(self) -> None:
        os.makedirs(self.destination, exist_ok=True)
        self._gc_task = asyncio.create_task(self._gc_loop())
        logger.info(f"Receiver ready, saving to {self.destination} (quick save: {self.settings.quick_save})")

    async def stop(self) -> None:
        if self._gc_task:
            self._gc_task.cancel()
        for session in self.sessions.active():
            self.cancel(session.session_id)
        logger.info("Receiver stopped")

    # --- Negotiation ---

    async def prepare_upload(
        self, request: PrepareUploadRequest, sender_ip: str
    ) -> PrepareUploadResponse:
        """
        Ask the decision provider about a manifest and issue tokens for the
        files it accepts.

        Raises:
            InvalidRequest: no files in the manifest.
            SessionDeclined: declined, or no decision before the timeout.
            NothingSelected: accepted, but every file was skipped.
        """
        if not request.files:
            raise InvalidRequest("Request must contain at least one file")
        for meta in request.files.values():
            safe_relative_path(meta.file_name)

        session = self.sessions.create(request.info, sender_ip, request.files)
        incoming = IncomingRequest(
            session_id=session.session_id,
            sender=request.info,
            sender_ip=sender_ip,
            files=dict(request.files),
            duplicates={fid for fid, meta in request.files.items() if self.is_duplicate(meta)},
        )
        await self._emit("session_request", {
            "session_id": session.session_id,
            "sender": request.info.to_wire(),
            "files": {fid: meta.to_wire() for fid, meta in request.files.items()},
        })

        try:
            accepted = await asyncio.wait_for(self.decision.decide(incoming), timeout=self.decision_timeout)
        except asyncio.TimeoutError:
            logger.info(f"Session {session.session_id} timed out waiting for acceptance")
            accepted = None

        if session.state == SessionState.CANCELLED:
            raise SessionCancelled()
        if accepted is None:
            self.sessions.reject(session.session_id)
            await self._emit("session_rejected", {"session_id": session.session_id})
            raise SessionDeclined()

        accepted &= set(request.files)
        if not accepted:
            self.sessions.reject(session.session_id)
            await self._emit("session_rejected", {"session_id": session.session_id})
            raise NothingSelected()

        tokens = self.sessions.accept(session.session_id, accepted)
        logger.info(f"Session {session.session_id}: accepted {len(tokens)} of {len(request.files)} file(s)")
        await self._emit("session_accepted", {
            "session_id": session.session_id,
            "files": sorted(tokens),
        })
        return PrepareUploadResponse(session_id=session.session_id, files=tokens)

    def is_duplicate(self, meta: FileMetadata) -> bool:
        """Same name and same size already at the destination."""
        target = self.destination / safe_relative_path(meta.file_name)
        try:
            return target.is_file() and target.stat().st_size == meta.size
        except OSError:
            return False

    # --- Upload ---

    async def upload(
        self,
        session_id: str,
        file_id: str,
        token: str,
        stream: AsyncIterator[bytes],
        sender_ip: str | None = None,
    ) -> Path:
        """
        Redeem a token and write the streamed bytes; returns the final path.

        The cancellation signal is checked before every write and right
        before the rename, so a cancelled session never gains a file.
        """
        session, entry = self.sessions.claim(session_id, file_id, token, sender_ip)
        meta = entry.metadata
        # File ids are sender-chosen, never use them as path components
        temp_name = hashlib.sha256(file_id.encode("utf-8")).hexdigest()[:16]
        temp_path = self.destination / f".{session_id}.{temp_name}.part"
        entry.temp_path = temp_path

        status = FileStatus.FAILED
        destination = None
        f = None
        try:
            os.makedirs(self.destination, exist_ok=True)
            f = await asyncio.to_thread(open, temp_path, "wb")
            digest = hashlib.sha256() if meta.sha256 else None
            received = 0
            last_progress = time.monotonic()

            async for chunk in stream:
                if session.signal.is_set():
                    raise SessionCancelled()
                if not chunk:
                    continue
                if received + len(chunk) > meta.size:
                    raise SizeExceeded(meta.size, received + len(chunk))
                await asyncio.to_thread(f.write, chunk)
                received += len(chunk)
                entry.bytes_received = received
                if digest:
                    digest.update(chunk)
                session.touch()

                now = time.monotonic()
                if now - last_progress >= PROGRESS_INTERVAL:
                    self._emit_progress(session, entry)
                    last_progress = now

            await asyncio.to_thread(f.close)
            if received != meta.size:
                raise SizeMismatch(meta.size, received)
            if digest and digest.hexdigest() != meta.sha256.lower():
                raise IntegrityError(f"sha256 mismatch for {meta.file_name}")
            if session.signal.is_set():
                raise SessionCancelled()

            destination = self._place(temp_path, meta)
            status = FileStatus.COMPLETED
        except SessionCancelled:
            status = FileStatus.CANCELLED
            raise
        except OSError as e:
            logger.error(f"Receive error for {meta.file_name}: {e}")
            raise TransferIOError() from e
        finally:
            if f is not None and not f.closed:
                f.close()
            if status != FileStatus.COMPLETED:
                try:
                    temp_path.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(f"Could not remove {temp_path}: {e}")
            self._finish(session, file_id, status, destination)

        logger.info(f"Received {meta.file_name} -> {destination}")
        return destination

    def _place(self, temp_path: Path, meta: FileMetadata) -> Path:
        """Rename the finished temporary file into place (no await: atomic on the loop)."""
        target = self.destination / safe_relative_path(meta.file_name)
        target.parent.mkdir(parents=True, exist_ok=True)
        if not self.settings.overwrite:
            target = self._free_name(target)
        os.replace(temp_path, target)
        return target

    @staticmethod
    def _free_name(target: Path) -> Path:
        if not target.exists():
            return target
        counter = 1
        while True:
            candidate = target.with_name(f"{target.stem} ({counter}){target.suffix}")
            if not candidate.exists():
                return candidate
            counter += 1

    def _finish(
        self, session: ReceiveSession, file_id: str, status: FileStatus, destination: Path | None
    ) -> None:
        self.sessions.finish(session, file_id, status, destination)
        self._emit_nowait(f"file_{status.value}", {
            "session_id": session.session_id,
            "file_id": file_id,
            "destination": str(destination) if destination else None,
        })
        if session.closed_at is not None:
            self._emit_nowait("session_finished", {
                "session_id": session.session_id,
                "state": session.state.value,
            })

    def _emit_progress(self, session: ReceiveSession, entry: ReceivingFile) -> None:
        self._emit_nowait("file_progress", {
            "session_id": session.session_id,
            "file_id": entry.metadata.id,
            "bytes_transferred": entry.bytes_received,
            "bytes_total": entry.metadata.size,
        })

    # --- Cancel ---

    def cancel(self, session_id: str, sender_ip: str | None = None) -> bool:
        """
        Cancel a session. Idempotent for known sessions; False if unknown.

        Raises:
            SenderMismatch: the request comes from another address than the session's sender.
        """
        session = self.sessions.get(session_id)
        if session is None:
            return False
        if sender_ip is not None and sender_ip != session.sender_ip:
            raise SenderMismatch()
        if session.closed_at is not None:
            return True

        if session.state == SessionState.NEGOTIATING:
            self.decision.withdraw(session_id)
        self.sessions.cancel(session_id)
        self._emit_nowait("session_cancelled", {"session_id": session_id})
        return True

    # --- Housekeeping ---

    def collect_garbage(self, now: float | None = None) -> list[ReceiveSession]:
        expired = self.sessions.collect_garbage(now)
        for session in expired:
            self._emit_nowait("session_finished", {
                "session_id": session.session_id,
                "state": session.state.value,
            })
        return expired

    async def _gc_loop(self) -> None:
        while True:
            await asyncio.sleep(GC_INTERVAL)
            self.collect_garbage()
