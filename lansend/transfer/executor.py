"""
Transfer Executor: streams the accepted files of a session to the peer.

One task per accepted file, bounded by a pool. Progress goes to an event
channel that never blocks the upload tasks: when the consumer falls behind,
the oldest progress events are dropped. Terminal events are never dropped.
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

import httpx

from lansend.config import CANCEL_PATH, CHUNK_SIZE, MAX_CONCURRENT_UPLOADS, PROGRESS_BUFFER, UPLOAD_PATH
from lansend.discovery.identity import IdentityProvider
from lansend.errors import CancelledByUser
from lansend.transfer.files import ByteSource
from lansend.transfer.models import (
    FileStatus,
    SessionState,
    TransferEvent,
    TransferProgress,
    guess_mime,
)
from lansend.transfer.negotiator import SessionHandle, peer_certificate

logger = logging.getLogger(__name__)

# Receiver answers this when the session was cancelled on its side
STATUS_SESSION_CANCELLED = 410


class EventChannel:
    """One-way, non-blocking event buffer with drop-oldest for progress events."""

    def __init__(self, maxsize: int = PROGRESS_BUFFER) -> None:
        self._events: deque[TransferEvent] = deque()
        self._maxsize = maxsize
        self._progress = 0
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0

    def publish(self, event: TransferEvent) -> None:
        if not event.terminal:
            if self._progress >= self._maxsize:
                self._drop_oldest_progress()
            self._progress += 1
        self._events.append(event)
        self._ready.set()

    def _drop_oldest_progress(self) -> None:
        for queued in self._events:
            if not queued.terminal:
                self._events.remove(queued)
                self._progress -= 1
                self.dropped += 1
                return

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    async def __aiter__(self) -> AsyncIterator[TransferEvent]:
        while True:
            while self._events:
                event = self._events.popleft()
                if not event.terminal:
                    self._progress -= 1
                yield event
            if self._closed:
                return
            self._ready.clear()
            await self._ready.wait()


@dataclass
class SessionOutcome:
    """Per-file terminal outcomes of a session and the verdict derived from them."""
    session_id: str
    files: dict[str, FileStatus] = field(default_factory=dict)
    progress: dict[str, TransferProgress] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    def record(self, event: TransferEvent) -> None:
        self.progress[event.file_id] = TransferProgress(
            file_id=event.file_id,
            bytes_transferred=event.bytes_transferred,
            bytes_total=event.bytes_total,
        )
        if event.terminal:
            self.files[event.file_id] = event.status
            if event.error_message:
                self.errors[event.file_id] = event.error_message

    def count(self, status: FileStatus) -> int:
        return sum(1 for s in self.files.values() if s == status)

    @property
    def state(self) -> SessionState:
        if self.cancelled or self.count(FileStatus.CANCELLED):
            return SessionState.CANCELLED
        attempted = [s for s in self.files.values() if s != FileStatus.REJECTED]
        if attempted and all(s == FileStatus.FAILED for s in attempted):
            return SessionState.FAILED
        return SessionState.COMPLETED

    @property
    def succeeded(self) -> bool:
        """At least one file arrived and none failed."""
        return self.count(FileStatus.COMPLETED) > 0 and self.count(FileStatus.FAILED) == 0

    @property
    def bytes_transferred(self) -> int:
        return sum(p.bytes_transferred for p in self.progress.values())


class TransferExecutor:
    """Runs the uploads of accepted sessions and cancels them on request."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        identity: IdentityProvider | None = None,
        pool_size: int = MAX_CONCURRENT_UPLOADS,
        chunk_size: int = CHUNK_SIZE,
        buffer_size: int = PROGRESS_BUFFER,
    ) -> None:
        self.client = client
        self.identity = identity
        self.pool_size = pool_size
        self.chunk_size = chunk_size
        self.buffer_size = buffer_size
        self._sessions: dict[str, SessionHandle] = {}

    def active_sessions(self) -> list[str]:
        return list(self._sessions)

    async def run(
        self,
        handle: SessionHandle,
        source_provider: Callable[[str], ByteSource],
    ) -> AsyncIterator[TransferEvent]:
        """
        Upload every accepted file of `handle` and yield its events.

        Rejected files get a REJECTED event up front; every accepted file
        ends with exactly one terminal event.
        """
        channel = EventChannel(self.buffer_size)
        outcome = SessionOutcome(session_id=handle.session_id)
        semaphore = asyncio.Semaphore(self.pool_size)

        self._sessions[handle.session_id] = handle
        handle.state = SessionState.TRANSFERRING

        for file_id in handle.rejected:
            meta = handle.manifest.files[file_id]
            channel.publish(TransferEvent(
                session_id=handle.session_id,
                file_id=file_id,
                status=FileStatus.REJECTED,
                bytes_total=meta.size,
            ))

        tasks = [
            asyncio.create_task(
                self._upload_file(handle, file_id, token, source_provider, semaphore, channel)
            )
            for file_id, token in handle.tokens.items()
        ]

        async def close_when_done() -> None:
            await asyncio.gather(*tasks, return_exceptions=True)
            channel.close()

        closer = asyncio.create_task(close_when_done())

        try:
            async for event in channel:
                outcome.record(event)
                yield event
        finally:
            if not closer.done():
                # Consumer went away before the end
                handle.signal.set()
                for task in tasks:
                    task.cancel()
                closer.cancel()
            outcome.cancelled = handle.signal.is_set()
            handle.state = outcome.state
            self._sessions.pop(handle.session_id, None)
            logger.info(
                f"Session {handle.session_id} finished as {handle.state.value}: "
                f"{outcome.count(FileStatus.COMPLETED)} completed, "
                f"{outcome.count(FileStatus.FAILED)} failed, "
                f"{outcome.count(FileStatus.REJECTED)} rejected"
            )

    async def _upload_file(
        self,
        handle: SessionHandle,
        file_id: str,
        token: str,
        source_provider: Callable[[str], ByteSource],
        semaphore: asyncio.Semaphore,
        channel: EventChannel,
    ) -> None:
        """Task wrapper for sending a single file; always ends with one terminal event."""
        meta = handle.manifest.files[file_id]
        sent = 0

        def event(status: FileStatus, delta: int = 0, error: str | None = None) -> TransferEvent:
            return TransferEvent(
                session_id=handle.session_id,
                file_id=file_id,
                status=status,
                bytes_transferred=sent,
                bytes_total=meta.size,
                delta=delta,
                error_message=error,
            )

        async def body() -> AsyncIterator[bytes]:
            nonlocal sent
            async for chunk in source_provider(file_id).chunks(self.chunk_size):
                if handle.signal.is_set():
                    raise CancelledByUser()
                yield chunk
                sent += len(chunk)
                channel.publish(event(FileStatus.SENDING, delta=len(chunk)))

        try:
            async with semaphore:
                if handle.signal.is_set():
                    raise CancelledByUser()
                async with self.client.stream(
                    "POST",
                    f"{handle.peer.base_url}{UPLOAD_PATH}",
                    params={"sessionId": handle.session_id, "fileId": file_id, "token": token},
                    headers={
                        "Content-Length": str(meta.size),
                        "Content-Type": guess_mime(meta.file_name),
                    },
                    content=body(),
                ) as response:
                    certificate = peer_certificate(response)
                    await response.aread()

            if handle.peer.device.https and not self._certificate_matches(handle, certificate):
                message = "peer certificate does not match its fingerprint"
                logger.error(f"Send error for {meta.file_name}: {message}")
                channel.publish(event(FileStatus.FAILED, error=message))
            elif response.is_success:
                logger.info(f"Sent {meta.file_name} ({sent} bytes)")
                channel.publish(event(FileStatus.COMPLETED))
            elif response.status_code == STATUS_SESSION_CANCELLED or handle.signal.is_set():
                channel.publish(event(FileStatus.CANCELLED))
            else:
                message = f"receiver answered {response.status_code}: {response.text.strip()}"
                logger.error(f"Send error for {meta.file_name}: {message}")
                channel.publish(event(FileStatus.FAILED, error=message))

        except CancelledByUser:
            channel.publish(event(FileStatus.CANCELLED))
        except asyncio.CancelledError:
            channel.publish(event(FileStatus.CANCELLED))
            raise
        except Exception as e:
            if handle.signal.is_set():
                channel.publish(event(FileStatus.CANCELLED))
            else:
                logger.error(f"Send error for {meta.file_name}: {e!r}")
                channel.publish(event(FileStatus.FAILED, error=str(e) or repr(e)))

    def _certificate_matches(self, handle: SessionHandle, certificate: bytes | None) -> bool:
        if self.identity is None:
            return False
        return self.identity.verify(handle.peer.fingerprint, certificate)

    async def cancel(self, session_id: str, notify: bool = True) -> bool:
        """
        Stop every file task of a session.

        With `notify`, the receiver is told as well so it can discard partial
        files right away. Returns False for unknown sessions.
        """
        handle = self._sessions.get(session_id)
        if handle is None:
            return False

        handle.signal.set()
        logger.info(f"Cancelling session {session_id}")

        if notify:
            await self.notify_cancel(handle)
        return True

    async def notify_cancel(self, handle: SessionHandle) -> None:
        """Best-effort cancel notification to the receiver of `handle`."""
        try:
            response = await self.client.post(
                f"{handle.peer.base_url}{CANCEL_PATH}",
                params={"sessionId": handle.session_id},
            )
            if not response.is_success:
                logger.warning(f"Receiver answered cancel with {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Cancel notification to {handle.peer.ip_address} failed: {e!r}")
