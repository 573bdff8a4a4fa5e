"""
Device Registry: known peers keyed by fingerprint.

Created by the discovery service and torn down with it. Entries that have
not been renewed within the liveness window are hidden from peer selection
and evicted later by `prune`.
"""

import asyncio
import inspect
import logging
import threading
import time

from lansend.config import PEER_EVICT_AFTER, PEER_TIMEOUT
from lansend.discovery.models import DeviceInfo, RegistryEntry

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Thread-safe table of peers; callbacks get (event, entry)."""

    def __init__(self, liveness: float = PEER_TIMEOUT, evict_after: float = PEER_EVICT_AFTER) -> None:
        self._entries: dict[str, RegistryEntry] = {}
        self._lock = threading.Lock()
        self._callbacks: list = []  # fn(event, entry), sync or async
        self.liveness = liveness
        self.evict_after = evict_after

    def on_change(self, callback) -> None:
        """Register a callback for peer_discovered / peer_updated / peer_lost."""
        self._callbacks.append(callback)

    def _notify(self, event: str, entry: RegistryEntry) -> None:
        for cb in self._callbacks:
            try:
                result = cb(event, entry)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.error(f"Registry callback error: {e}")

    def update(self, device: DeviceInfo, ip_address: str, now: float | None = None) -> bool:
        """
        Insert or replace the entry for `device.fingerprint`.

        Returns True if the peer was unknown or stale (a discovery event),
        False for a plain renewal.
        """
        now = time.time() if now is None else now
        entry = RegistryEntry(device=device, ip_address=ip_address, last_seen=now)

        with self._lock:
            previous = self._entries.get(device.fingerprint)
            self._entries[device.fingerprint] = entry

        if previous is None or not previous.is_live(now, self.liveness):
            logger.info(f"Discovered peer: {device.alias} ({ip_address})")
            self._notify("peer_discovered", entry)
            return True
        if previous.device != device or previous.ip_address != ip_address:
            self._notify("peer_updated", entry)
        return False

    def get(self, fingerprint: str, now: float | None = None) -> RegistryEntry | None:
        """Return the live entry for a fingerprint, or None."""
        now = time.time() if now is None else now
        with self._lock:
            entry = self._entries.get(fingerprint)
        if entry and entry.is_live(now, self.liveness):
            return entry
        return None

    def peers(self, now: float | None = None) -> list[RegistryEntry]:
        """Live peers, most recently seen first."""
        now = time.time() if now is None else now
        with self._lock:
            entries = list(self._entries.values())
        live = [e for e in entries if e.is_live(now, self.liveness)]
        return sorted(live, key=lambda e: e.last_seen, reverse=True)

    def prune(self, now: float | None = None) -> list[RegistryEntry]:
        """Evict entries unseen for longer than `evict_after`."""
        now = time.time() if now is None else now
        with self._lock:
            stale = [
                e for e in self._entries.values()
                if not e.is_live(now, self.evict_after)
            ]
            for entry in stale:
                del self._entries[entry.fingerprint]

        for entry in stale:
            logger.info(f"Peer lost: {entry.device.alias} ({entry.ip_address})")
            self._notify("peer_lost", entry)
        return stale

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, fingerprint: str) -> bool:
        return self.get(fingerprint) is not None
