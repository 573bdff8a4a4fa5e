"""
Transfer Manager: orchestrates outgoing transfers.

Negotiates with the chosen peer, hands the issued tokens to the executor,
and forwards every event to the registered callbacks.
"""

import asyncio
import logging

import httpx

from lansend.config import MAX_CONCURRENT_UPLOADS
from lansend.discovery.identity import IdentityProvider
from lansend.discovery.models import DeviceInfo, RegistryEntry
from lansend.errors import CancelledByUser, NegotiationError, NegotiationRejected
from lansend.transfer.executor import SessionOutcome, TransferExecutor
from lansend.transfer.files import SendingFiles
from lansend.transfer.models import CancellationSignal, FileStatus, TransferEvent
from lansend.transfer.negotiator import SessionNegotiator, create_client

logger = logging.getLogger(__name__)


class TransferManager:
    """Sender-side entry point: one `send` per user-initiated transfer."""

    def __init__(
        self,
        identity: IdentityProvider,
        device: DeviceInfo,
        client: httpx.AsyncClient | None = None,
        pool_size: int = MAX_CONCURRENT_UPLOADS,
    ) -> None:
        self.identity = identity
        self.device = device
        self.client = client or create_client()
        self.negotiator = SessionNegotiator(identity, self.client)
        self.executor = TransferExecutor(self.client, identity=identity, pool_size=pool_size)
        self._event_callbacks: list = []  # async fn(event)
        self._pending: dict[int, CancellationSignal] = {}
        self._tasks: set[asyncio.Task] = set()

    def on_event(self, callback) -> None:
        """Register callback: async fn(event: TransferEvent)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event: TransferEvent) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def send(self, peer: RegistryEntry, files: SendingFiles) -> SessionOutcome:
        """
        Send `files` to `peer` and wait until every file reached a terminal state.

        Negotiation failures are raised (NegotiationError subclasses or
        CancelledByUser); per-file failures end up in the returned outcome.
        """
        manifest = files.manifest(self.device)
        signal = CancellationSignal()
        self._pending[id(signal)] = signal
        try:
            handle = await self.negotiator.negotiate(peer, manifest, signal)
        except NegotiationError as e:
            logger.warning(f"Negotiation with {peer.device.alias} failed: {e}")
            raise
        finally:
            self._pending.pop(id(signal), None)

        if signal.is_set():
            # Cancelled while the peer was answering
            logger.info(f"Session {handle.session_id} cancelled before its uploads started")
            await self.executor.notify_cancel(handle)
            raise CancelledByUser()

        outcome = SessionOutcome(session_id=handle.session_id)
        async for event in self.executor.run(handle, files.source):
            outcome.record(event)
            await self._emit(event)

        outcome.cancelled = handle.signal.is_set()
        if outcome.count(FileStatus.FAILED):
            logger.warning(f"Session {handle.session_id}: {outcome.count(FileStatus.FAILED)} file(s) failed")
        return outcome

    def start_send(self, peer: RegistryEntry, files: SendingFiles) -> asyncio.Task:
        """Run `send` in the background; failures are logged and reported as events."""
        task = asyncio.create_task(self._send_logged(peer, files))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send_logged(self, peer: RegistryEntry, files: SendingFiles) -> SessionOutcome | None:
        try:
            return await self.send(peer, files)
        except (NegotiationError, CancelledByUser) as e:
            if isinstance(e, CancelledByUser):
                status = FileStatus.CANCELLED
            elif isinstance(e, NegotiationRejected):
                status = FileStatus.REJECTED
            else:
                status = FileStatus.FAILED
            for f in files:
                await self._emit(TransferEvent(
                    session_id="",
                    file_id=f.id,
                    status=status,
                    bytes_total=f.metadata.size,
                    error_message=str(e),
                ))
            return None

    async def cancel(self, session_id: str | None = None) -> bool:
        """
        Cancel one outgoing session, or everything in flight when no id is given.

        Negotiations that have not been answered yet are stopped before their
        uploads start, and the peer is told to drop the session it opened.
        """
        if session_id is not None:
            return await self.executor.cancel(session_id)

        for signal in self._pending.values():
            signal.set()
        cancelled = bool(self._pending)
        for sid in self.executor.active_sessions():
            cancelled = await self.executor.cancel(sid) or cancelled
        return cancelled

    async def cancel_by_receiver(self, session_id: str) -> bool:
        """The receiver cancelled: stop locally without notifying it back."""
        return await self.executor.cancel(session_id, notify=False)

    async def close(self) -> None:
        await self.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.client.aclose()
        logger.info("Transfer manager stopped")
