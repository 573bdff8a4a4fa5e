"""
Decision providers: who accepts an incoming transfer.

The receiver asks a provider which files of a request to take and waits for
the answer with a timeout. `None` means the whole request is declined.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from lansend.discovery.models import DeviceInfo
from lansend.transfer.models import FileMetadata

logger = logging.getLogger(__name__)


@dataclass
class IncomingRequest:
    """What the receiver knows about a request while it waits for a decision."""
    session_id: str
    sender: DeviceInfo
    sender_ip: str
    files: dict[str, FileMetadata]
    duplicates: set[str] = field(default_factory=set)


class DecisionProvider:
    async def decide(self, request: IncomingRequest) -> set[str] | None:
        raise NotImplementedError

    def withdraw(self, session_id: str) -> None:
        """The request went away (cancelled) before a decision was made."""


class QuickSaveDecision(DecisionProvider):
    """Accept everything that is not already on disk."""

    async def decide(self, request: IncomingRequest) -> set[str] | None:
        accepted = set(request.files) - request.duplicates
        if request.duplicates:
            logger.info(f"Quick save: skipping {len(request.duplicates)} duplicate file(s)")
        return accepted


class InteractiveDecision(DecisionProvider):
    """
    Surface the request to a user interface and wait for it to call
    `respond`. Requests that nobody answers are declined by the receiver's
    timeout.
    """

    def __init__(self) -> None:
        self._futures: dict[str, asyncio.Future] = {}
        self._requests: dict[str, IncomingRequest] = {}
        self._callbacks: list = []  # async fn(request)

    def on_request(self, callback) -> None:
        """Register callback: async fn(request: IncomingRequest)."""
        self._callbacks.append(callback)

    def pending(self) -> list[IncomingRequest]:
        return list(self._requests.values())

    async def decide(self, request: IncomingRequest) -> set[str] | None:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._futures[request.session_id] = future
        self._requests[request.session_id] = request

        for cb in self._callbacks:
            try:
                await cb(request)
            except Exception as e:
                logger.error(f"Request callback error: {e}")

        try:
            return await future
        finally:
            self._futures.pop(request.session_id, None)
            self._requests.pop(request.session_id, None)

    def respond(self, session_id: str, file_ids: set[str] | None) -> bool:
        """Resolve a pending request: a set of file ids to accept, or None to decline."""
        future = self._futures.get(session_id)
        if future is None or future.done():
            return False
        future.set_result(set(file_ids) if file_ids is not None else None)
        return True

    def accept_all(self, session_id: str) -> bool:
        request = self._requests.get(session_id)
        if request is None:
            return False
        return self.respond(session_id, set(request.files))

    def decline(self, session_id: str) -> bool:
        return self.respond(session_id, None)

    def withdraw(self, session_id: str) -> None:
        self.decline(session_id)
