"""
Multicast LAN discovery service.

Announces this device on the multicast group, listens for other devices'
announcements, and answers proactive announcements with a unicast reply so
late joiners converge without waiting for the next cycle.
"""

import asyncio
import logging
import socket
import struct

from pydantic import ValidationError

from lansend.config import (
    ANNOUNCE_BURST,
    ANNOUNCE_INTERVAL,
    MULTICAST_GROUP,
    MULTICAST_PORT,
    PEER_TIMEOUT,
)
from lansend.discovery.identity import IdentityProvider
from lansend.discovery.models import Announcement, DeviceInfo
from lansend.discovery.registry import DeviceRegistry
from lansend.errors import DiscoveryTransient

logger = logging.getLogger(__name__)


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving announcements."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.service.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


def open_multicast_socket(group: str, port: int) -> socket.socket:
    """UDP socket bound to `port` and joined to the multicast `group`."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    # Several instances on one host share the port
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    if hasattr(socket, "SO_REUSEPORT"):
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        except OSError:
            pass
    sock.bind(("", port))

    membership = struct.pack("4s4s", socket.inet_aton(group), socket.inet_aton("0.0.0.0"))
    sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
    sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 1)
    sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
    sock.setblocking(False)
    return sock


class DiscoveryService:
    """Idle -> Announcing -> Listening; owns the Device Registry."""

    def __init__(
        self,
        identity: IdentityProvider,
        device: DeviceInfo,
        group: str = MULTICAST_GROUP,
        port: int = MULTICAST_PORT,
        reply: bool = True,
        interval: float = ANNOUNCE_INTERVAL,
    ) -> None:
        self.identity = identity
        self.group = group
        self.port = port
        self.reply = reply
        self.interval = interval
        self.state = "idle"
        self.registry: DeviceRegistry | None = None
        self._device = device
        self._transport: asyncio.DatagramTransport | None = None
        self._announce_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None

    @property
    def device(self) -> DeviceInfo:
        return self._device

    @device.setter
    def device(self, device: DeviceInfo) -> None:
        self._device = device

    async def start(self) -> DeviceRegistry:
        """Open the socket, create the registry and start the background loops."""
        logger.info(f"Starting discovery on {self.group}:{self.port}")

        self.registry = DeviceRegistry()
        loop = asyncio.get_running_loop()
        sock = open_multicast_socket(self.group, self.port)
        transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self),
            sock=sock,
        )
        self.attach(transport)

        self._announce_task = asyncio.create_task(self._announce_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Discovery service started")
        return self.registry

    def attach(self, transport: asyncio.DatagramTransport) -> None:
        """Use an already opened datagram transport."""
        if self.registry is None:
            self.registry = DeviceRegistry()
        self._transport = transport

    async def stop(self) -> None:
        """Stop the loops, close the socket and tear down the registry."""
        tasks = [t for t in (self._announce_task, self._cleanup_task) if t]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._announce_task = self._cleanup_task = None
        if self._transport:
            self._transport.close()
            self._transport = None
        if self.registry is not None:
            self.registry.clear()
        self.state = "idle"
        logger.info("Discovery service stopped")

    def handle_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        """Process one received packet; malformed packets are dropped."""
        try:
            announcement = Announcement.model_validate_json(data)
        except ValidationError as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e.error_count()} errors")
            return

        if self.identity.is_self(announcement.fingerprint):
            return

        if self.registry is not None:
            self.registry.update(announcement.device(), addr[0])

        if announcement.announce and self.reply:
            self._send(self._payload(announce=False), addr)

    def announce(self) -> None:
        """Send one proactive announcement to the multicast group."""
        self._send(self._payload(announce=True), (self.group, self.port))

    def _payload(self, announce: bool) -> bytes:
        return Announcement.from_device(self._device, announce=announce).to_json_bytes()

    def _send(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            self._transmit(data, addr)
        except DiscoveryTransient as e:
            # Retried on the next cycle
            logger.warning(str(e))

    def _transmit(self, data: bytes, addr: tuple[str, int]) -> None:
        if not self._transport:
            return
        try:
            self._transport.sendto(data, addr)
        except OSError as e:
            raise DiscoveryTransient(f"Announcement to {addr[0]} failed: {e}") from e

    async def _announce_loop(self) -> None:
        """A short burst on startup, then one announcement per interval."""
        self.state = "announcing"
        for delay in ANNOUNCE_BURST:
            self.announce()
            await asyncio.sleep(delay)

        self.state = "listening"
        while True:
            self.announce()
            await asyncio.sleep(self.interval)

    async def _cleanup_loop(self) -> None:
        """Evict peers that have not been seen for a while."""
        while True:
            await asyncio.sleep(PEER_TIMEOUT)
            if self.registry is not None:
                self.registry.prune()
