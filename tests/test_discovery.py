import asyncio
import json

import pytest

from lansend.discovery.identity import IdentityProvider
from lansend.discovery.models import Announcement, DeviceInfo
from lansend.discovery.registry import DeviceRegistry
from lansend.discovery.service import DiscoveryService
from lansend.errors import DiscoveryTransient

GROUP = ("224.0.0.167", 53317)


class FakeTransport:
    """Records datagrams instead of sending them."""

    def __init__(self, fail: bool = False):
        self.sent: list[tuple[bytes, tuple[str, int]]] = []
        self.fail = fail
        self.closed = False

    def sendto(self, data, addr):
        if self.fail:
            raise OSError("network unreachable")
        self.sent.append((data, addr))

    def close(self):
        self.closed = True


def make_service(alias: str) -> tuple[DiscoveryService, FakeTransport]:
    identity = IdentityProvider(alias=alias)
    service = DiscoveryService(identity, identity.device_info(port=53318))
    transport = FakeTransport()
    service.attach(transport)
    return service, transport


def device(fp: str, alias: str = "peer") -> DeviceInfo:
    return DeviceInfo(alias=alias, fingerprint=fp, port=53318)


# --- Device Registry ---

def test_registry_update_reports_new_peer():
    registry = DeviceRegistry(liveness=10, evict_after=30)
    events = []
    registry.on_change(lambda event, entry: events.append((event, entry.fingerprint)))

    assert registry.update(device("A"), "10.0.0.1", now=100.0)
    assert not registry.update(device("A"), "10.0.0.1", now=105.0)
    assert events == [("peer_discovered", "A")]


def test_registry_address_change_is_an_update():
    registry = DeviceRegistry(liveness=10, evict_after=30)
    events = []
    registry.on_change(lambda event, entry: events.append(event))

    registry.update(device("A"), "10.0.0.1", now=100.0)
    registry.update(device("A"), "10.0.0.2", now=101.0)

    assert events == ["peer_discovered", "peer_updated"]
    assert registry.get("A", now=101.0).ip_address == "10.0.0.2"


def test_registry_hides_stale_entries():
    registry = DeviceRegistry(liveness=10, evict_after=30)
    registry.update(device("A"), "10.0.0.1", now=100.0)

    assert registry.get("A", now=109.0) is not None
    assert registry.get("A", now=111.0) is None
    assert registry.peers(now=111.0) == []
    # Renewal after going stale counts as rediscovery
    assert registry.update(device("A"), "10.0.0.1", now=112.0)


def test_registry_peers_most_recent_first():
    registry = DeviceRegistry(liveness=10, evict_after=30)
    registry.update(device("A"), "10.0.0.1", now=100.0)
    registry.update(device("B"), "10.0.0.2", now=102.0)

    assert [e.fingerprint for e in registry.peers(now=103.0)] == ["B", "A"]


def test_registry_prune_evicts_and_notifies():
    registry = DeviceRegistry(liveness=10, evict_after=30)
    lost = []
    registry.on_change(lambda event, entry: lost.append(entry.fingerprint) if event == "peer_lost" else None)
    registry.update(device("A"), "10.0.0.1", now=100.0)
    registry.update(device("B"), "10.0.0.2", now=125.0)

    evicted = registry.prune(now=131.0)

    assert [e.fingerprint for e in evicted] == ["A"]
    assert lost == ["A"]
    assert len(registry) == 1


def test_registry_callback_errors_are_contained():
    registry = DeviceRegistry()

    def broken(event, entry):
        raise RuntimeError("boom")

    registry.on_change(broken)
    assert registry.update(device("A"), "10.0.0.1")


# --- Discovery Service ---

def test_announce_goes_to_group():
    service, transport = make_service("alpha")
    service.announce()

    data, addr = transport.sent[0]
    ann = Announcement.model_validate_json(data)
    assert addr == GROUP
    assert ann.announce is True
    assert ann.fingerprint == service.identity.fingerprint()


def test_two_peers_converge():
    a, a_transport = make_service("alpha")
    b, b_transport = make_service("beta")

    a.announce()
    announcement, _ = a_transport.sent[-1]
    b.handle_datagram(announcement, ("10.0.0.1", 53317))

    entry = b.registry.get(a.identity.fingerprint())
    assert entry is not None
    assert entry.ip_address == "10.0.0.1"
    assert entry.device.alias == "alpha"

    # B answers the proactive announcement directly
    reply, addr = b_transport.sent[-1]
    assert addr == ("10.0.0.1", 53317)
    assert Announcement.model_validate_json(reply).announce is False

    a.handle_datagram(reply, ("10.0.0.2", 53317))
    assert a.registry.get(b.identity.fingerprint()).ip_address == "10.0.0.2"
    # Replies are never answered
    assert a_transport.sent == [(announcement, GROUP)]


def test_own_announcement_is_ignored():
    service, transport = make_service("alpha")
    service.announce()
    data, _ = transport.sent[0]

    service.handle_datagram(data, ("10.0.0.1", 53317))

    assert len(service.registry) == 0
    assert len(transport.sent) == 1


@pytest.mark.parametrize("packet", [
    b"not json",
    b"{}",
    json.dumps({"alias": "x"}).encode(),
    json.dumps({"alias": "x", "fingerprint": "F", "port": "many"}).encode(),
])
def test_malformed_packets_are_dropped(packet):
    service, transport = make_service("alpha")

    service.handle_datagram(packet, ("10.0.0.1", 53317))

    assert len(service.registry) == 0
    assert transport.sent == []


def test_reply_disabled():
    a, a_transport = make_service("alpha")
    b, b_transport = make_service("beta")
    b.reply = False

    a.announce()
    b.handle_datagram(a_transport.sent[-1][0], ("10.0.0.1", 53317))

    assert a.identity.fingerprint() in b.registry
    assert b_transport.sent == []


def test_send_failure_is_not_fatal():
    service, _ = make_service("alpha")
    service.attach(FakeTransport(fail=True))

    with pytest.raises(DiscoveryTransient):
        service._transmit(b"{}", GROUP)
    service.announce()


async def test_stop_tears_down_registry():
    a, a_transport = make_service("alpha")
    b, _ = make_service("beta")
    b.announce()
    a.handle_datagram(b._transport.sent[-1][0], ("10.0.0.2", 53317))
    assert len(a.registry) == 1

    await a.stop()

    assert a_transport.closed
    assert len(a.registry) == 0
    assert a.state == "idle"


async def test_stop_waits_for_background_loops():
    service, transport = make_service("alpha")
    service._announce_task = asyncio.create_task(service._announce_loop())
    service._cleanup_task = asyncio.create_task(service._cleanup_loop())
    loops = [service._announce_task, service._cleanup_task]
    await asyncio.sleep(0)

    await service.stop()

    assert all(task.done() for task in loops)
    assert service._announce_task is None
    assert transport.sent
