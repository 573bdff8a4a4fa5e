import httpx
import pytest

from lansend.config import Settings
from lansend.discovery.identity import IdentityProvider
from lansend.discovery.models import DeviceInfo, RegistryEntry
from lansend.main import create_app
from lansend.receiver.decision import QuickSaveDecision
from lansend.transfer.models import FileMetadata, PrepareUploadRequest

PEER_IP = "127.0.0.1"


def make_manifest(sender: DeviceInfo, *files: tuple[str, str, int], **extra) -> dict:
    """Wire-format manifest from (id, name, size) triples."""
    request = PrepareUploadRequest(
        info=sender,
        files={
            file_id: FileMetadata(id=file_id, file_name=name, size=size, **extra.get(file_id, {}))
            for file_id, name, size in files
        },
    )
    return request.to_wire()


@pytest.fixture(scope="session")
def sender_identity():
    return IdentityProvider(alias="sender")


@pytest.fixture(scope="session")
def receiver_identity():
    return IdentityProvider(alias="receiver")


@pytest.fixture
def sender_info(sender_identity):
    return sender_identity.device_info(port=53318)


@pytest.fixture
def settings(tmp_path):
    return Settings(destination=tmp_path / "inbox", quick_save=True, https=False)


@pytest.fixture
def decision():
    return QuickSaveDecision()


@pytest.fixture
def app(settings, receiver_identity, decision):
    return create_app(settings, receiver_identity, decision, discovery=False)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    await app.state.transfers.close()


@pytest.fixture
def peer(receiver_identity):
    """The receiver app as the sender sees it in its Device Registry."""
    return RegistryEntry(
        device=receiver_identity.device_info(port=53318),
        ip_address=PEER_IP,
    )
