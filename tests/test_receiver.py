import asyncio
import hashlib
import time

import httpx
import pytest

from conftest import make_manifest
from lansend.config import CANCEL_PATH, PREPARE_UPLOAD_PATH, Settings, UPLOAD_PATH
from lansend.errors import InvalidRequest
from lansend.receiver.decision import InteractiveDecision
from lansend.receiver.service import ReceiverService, safe_relative_path
from lansend.receiver.sessions import SessionRegistry
from lansend.transfer.models import (
    FileMetadata,
    FileStatus,
    PrepareUploadRequest,
    SessionState,
)


async def prepare(client, manifest) -> httpx.Response:
    return await client.post(PREPARE_UPLOAD_PATH, json=manifest)


async def upload(client, session_id, file_id, token, content) -> httpx.Response:
    return await client.post(
        UPLOAD_PATH,
        params={"sessionId": session_id, "fileId": file_id, "token": token},
        content=content,
    )


def part_files(settings):
    return list(settings.destination.glob(".*.part"))


# --- Negotiation ---

async def test_quick_save_round_trip(client, app, settings, sender_info):
    response = await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 11)))
    assert response.status_code == 200
    answer = response.json()
    session_id, token = answer["sessionId"], answer["files"]["f1"]

    response = await upload(client, session_id, "f1", token, b"hello world")
    assert response.status_code == 200
    assert (settings.destination / "a.txt").read_bytes() == b"hello world"

    session = app.state.receiver.sessions.get(session_id)
    assert session.state == SessionState.COMPLETED
    assert session.files["f1"].status == FileStatus.COMPLETED

    # Tokens are single use
    response = await upload(client, session_id, "f1", token, b"hello world")
    assert response.status_code == 409
    assert part_files(settings) == []


async def test_tokens_are_unique_per_file(client, sender_info):
    response = await prepare(
        client, make_manifest(sender_info, ("f1", "a.txt", 1), ("f2", "b.txt", 1), ("f3", "c.txt", 1))
    )
    tokens = response.json()["files"]

    assert set(tokens) == {"f1", "f2", "f3"}
    assert len(set(tokens.values())) == 3


async def test_duplicate_is_skipped(client, settings, sender_info):
    settings.destination.mkdir(parents=True)
    (settings.destination / "dup.txt").write_bytes(b"12345")

    response = await prepare(
        client, make_manifest(sender_info, ("f1", "dup.txt", 5), ("f2", "new.txt", 3))
    )

    assert response.status_code == 200
    assert set(response.json()["files"]) == {"f2"}


async def test_all_duplicates_is_nothing_selected(client, settings, sender_info):
    settings.destination.mkdir(parents=True)
    (settings.destination / "dup.txt").write_bytes(b"12345")

    response = await prepare(client, make_manifest(sender_info, ("f1", "dup.txt", 5)))

    assert response.status_code == 204
    assert response.content == b""


async def test_empty_manifest_is_rejected(client, sender_info):
    response = await prepare(client, {"info": sender_info.to_wire(), "files": {}})
    assert response.status_code == 400


@pytest.mark.parametrize("body", [
    b"not json",
    b'{"files": {}}',
    b'{"info": {"alias": "x", "fingerprint": "F"}, "files": {"f1": {"id": "f1", "fileName": "a", "size": -1}}}',
])
async def test_malformed_manifest_is_rejected(client, body):
    response = await client.post(PREPARE_UPLOAD_PATH, content=body)
    assert response.status_code == 400


async def test_path_only_file_name_is_rejected(client, sender_info):
    response = await prepare(client, make_manifest(sender_info, ("f1", "../..", 3)))
    assert response.status_code == 400


async def test_file_name_cannot_escape_destination(client, settings, sender_info):
    response = await prepare(client, make_manifest(sender_info, ("f1", "../../evil.txt", 4)))
    answer = response.json()

    response = await upload(client, answer["sessionId"], "f1", answer["files"]["f1"], b"evil")

    assert response.status_code == 200
    assert (settings.destination / "evil.txt").read_bytes() == b"evil"
    assert not (settings.destination.parent / "evil.txt").exists()


async def test_directory_structure_is_kept(client, settings, sender_info):
    response = await prepare(client, make_manifest(sender_info, ("f1", "album/2024/x.jpg", 3)))
    answer = response.json()

    await upload(client, answer["sessionId"], "f1", answer["files"]["f1"], b"jpg")

    assert (settings.destination / "album" / "2024" / "x.jpg").read_bytes() == b"jpg"


async def test_existing_file_is_not_overwritten(client, settings, sender_info):
    settings.destination.mkdir(parents=True)
    (settings.destination / "a.txt").write_bytes(b"old")

    response = await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 5)))
    answer = response.json()
    await upload(client, answer["sessionId"], "f1", answer["files"]["f1"], b"fresh")

    assert (settings.destination / "a.txt").read_bytes() == b"old"
    assert (settings.destination / "a (1).txt").read_bytes() == b"fresh"


# --- Interactive decisions ---

class TestInteractiveDecision:
    @pytest.fixture
    def decision(self):
        return InteractiveDecision()

    async def test_decline(self, client, decision, sender_info):
        async def decline(request):
            decision.decline(request.session_id)

        decision.on_request(decline)
        response = await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 1)))

        assert response.status_code == 403

    async def test_partial_accept(self, client, decision, sender_info):
        async def pick_first(request):
            decision.respond(request.session_id, {"f1"})

        decision.on_request(pick_first)
        response = await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 1), ("f2", "b.txt", 1)))

        assert response.status_code == 200
        assert set(response.json()["files"]) == {"f1"}

    async def test_accept_from_another_task(self, client, decision, sender_info):
        async def accept_later():
            while not decision.pending():
                await asyncio.sleep(0.01)
            decision.accept_all(decision.pending()[0].session_id)

        acceptor = asyncio.create_task(accept_later())
        response = await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 1)))
        await acceptor

        assert response.status_code == 200
        assert set(response.json()["files"]) == {"f1"}

    async def test_unanswered_request_times_out(self, client, app, decision, sender_info):
        app.state.receiver.decision_timeout = 0.05

        response = await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 1)))

        assert response.status_code == 403
        assert decision.pending() == []

    async def test_cancel_while_negotiating(self, client, app, decision, sender_info):
        async def cancel_when_asked():
            while not decision.pending():
                await asyncio.sleep(0.01)
            app.state.receiver.cancel(decision.pending()[0].session_id)

        canceller = asyncio.create_task(cancel_when_asked())
        response = await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 1)))
        await canceller

        assert response.status_code == 410


# --- Upload ---

async def test_wrong_token(client, sender_info):
    answer = (await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 1)))).json()

    response = await upload(client, answer["sessionId"], "f1", "nope", b"x")
    assert response.status_code == 403


async def test_unknown_session(client):
    response = await upload(client, "missing", "f1", "t", b"x")
    assert response.status_code == 403


async def test_missing_parameters(client):
    response = await client.post(UPLOAD_PATH, params={"sessionId": "s"}, content=b"x")
    assert response.status_code == 400


async def test_upload_from_other_address(app, client, sender_info):
    answer = (await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 1)))).json()

    transport = httpx.ASGITransport(app=app, client=("10.9.9.9", 4000))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as stranger:
        response = await upload(stranger, answer["sessionId"], "f1", answer["files"]["f1"], b"x")

    assert response.status_code == 403


async def test_concurrent_uploads_of_same_file(client, settings, sender_info):
    answer = (await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 4)))).json()
    args = (answer["sessionId"], "f1", answer["files"]["f1"], b"data")

    responses = await asyncio.gather(upload(client, *args), upload(client, *args))

    assert sorted(r.status_code for r in responses) == [200, 409]
    assert (settings.destination / "a.txt").read_bytes() == b"data"
    assert not (settings.destination / "a (1).txt").exists()


async def test_size_exceeded(client, settings, sender_info):
    answer = (await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 5)))).json()

    response = await upload(client, answer["sessionId"], "f1", answer["files"]["f1"], b"0123456789")

    assert response.status_code == 413
    assert not (settings.destination / "a.txt").exists()
    assert part_files(settings) == []


async def test_short_upload(client, app, settings, sender_info):
    answer = (await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 10)))).json()

    response = await upload(client, answer["sessionId"], "f1", answer["files"]["f1"], b"01234")

    assert response.status_code == 400
    assert not (settings.destination / "a.txt").exists()
    assert part_files(settings) == []
    session = app.state.receiver.sessions.get(answer["sessionId"])
    assert session.files["f1"].status == FileStatus.FAILED
    assert session.state == SessionState.FAILED


async def test_failed_file_does_not_affect_others(client, app, settings, sender_info):
    answer = (await prepare(
        client, make_manifest(sender_info, ("f1", "a.txt", 10), ("f2", "b.txt", 3))
    )).json()
    sid, tokens = answer["sessionId"], answer["files"]

    assert (await upload(client, sid, "f1", tokens["f1"], b"short")).status_code == 400
    assert (await upload(client, sid, "f2", tokens["f2"], b"abc")).status_code == 200

    assert (settings.destination / "b.txt").read_bytes() == b"abc"
    assert app.state.receiver.sessions.get(sid).state == SessionState.COMPLETED


async def test_sha256_is_verified(client, settings, sender_info):
    manifest = make_manifest(
        sender_info, ("f1", "a.txt", 5), ("f2", "b.txt", 5),
        f1={"sha256": hashlib.sha256(b"right").hexdigest()},
        f2={"sha256": hashlib.sha256(b"right").hexdigest()},
    )
    answer = (await prepare(client, manifest)).json()
    sid, tokens = answer["sessionId"], answer["files"]

    assert (await upload(client, sid, "f1", tokens["f1"], b"right")).status_code == 200
    assert (await upload(client, sid, "f2", tokens["f2"], b"wrong")).status_code == 400
    assert (settings.destination / "a.txt").exists()
    assert not (settings.destination / "b.txt").exists()


# --- Cancel ---

async def test_cancel_during_upload(client, app, settings, sender_info):
    answer = (await prepare(
        client, make_manifest(sender_info, ("f1", "a.txt", 20), ("f2", "b.txt", 3))
    )).json()
    sid, tokens = answer["sessionId"], answer["files"]
    written = asyncio.Event()
    resume = asyncio.Event()

    async def body():
        yield b"x" * 10
        written.set()
        await resume.wait()
        yield b"y" * 10

    uploading = asyncio.create_task(upload(client, sid, "f1", tokens["f1"], body()))
    await asyncio.wait_for(written.wait(), timeout=5)
    assert len(part_files(settings)) == 1

    response = await client.post(CANCEL_PATH, params={"sessionId": sid})
    assert response.status_code == 200
    resume.set()

    assert (await uploading).status_code == 410
    assert (await upload(client, sid, "f2", tokens["f2"], b"abc")).status_code == 410
    assert part_files(settings) == []
    assert not (settings.destination / "a.txt").exists()
    assert app.state.receiver.sessions.get(sid).state == SessionState.CANCELLED


async def test_cancel_is_idempotent(client, sender_info):
    answer = (await prepare(client, make_manifest(sender_info, ("f1", "a.txt", 1)))).json()

    first = await client.post(CANCEL_PATH, params={"sessionId": answer["sessionId"]})
    second = await client.post(CANCEL_PATH, params={"sessionId": answer["sessionId"]})

    assert first.status_code == second.status_code == 200


async def test_cancel_unknown_session(client):
    response = await client.post(CANCEL_PATH, params={"sessionId": "missing"})
    assert response.status_code == 403


# --- Service level ---

def request_for(sender_info, *files) -> PrepareUploadRequest:
    return PrepareUploadRequest(
        info=sender_info,
        files={fid: FileMetadata(id=fid, file_name=name, size=size) for fid, name, size in files},
    )


async def test_idle_sessions_are_collected(tmp_path, sender_info):
    registry = SessionRegistry(timeout=60)
    receiver = ReceiverService(Settings(destination=tmp_path, quick_save=True), sessions=registry)
    assert receiver.sessions is registry

    answer = await receiver.prepare_upload(request_for(sender_info, ("f1", "a.txt", 1)), "10.0.0.1")
    session = receiver.sessions.get(answer.session_id)

    assert receiver.collect_garbage(time.monotonic()) == []
    expired = receiver.collect_garbage(time.monotonic() + 61)

    assert expired == [session]
    assert session.state == SessionState.FAILED
    assert session.files["f1"].status == FileStatus.FAILED
    assert len(receiver.sessions) == 0

    # Closed sessions are forgotten after another timeout
    receiver.collect_garbage(time.monotonic() + 200)
    assert receiver.sessions.get(answer.session_id) is None


async def test_events_are_emitted(tmp_path, sender_info):
    receiver = ReceiverService(Settings(destination=tmp_path, quick_save=True))
    events = []

    async def record(event_type, data):
        events.append(event_type)

    receiver.on_event(record)
    answer = await receiver.prepare_upload(request_for(sender_info, ("f1", "a.txt", 2)), "10.0.0.1")

    async def stream():
        yield b"ok"

    await receiver.upload(answer.session_id, "f1", answer.files["f1"], stream(), "10.0.0.1")
    await asyncio.sleep(0.01)

    assert events[:2] == ["session_request", "session_accepted"]
    assert "file_completed" in events
    assert "session_finished" in events


def test_safe_relative_path():
    assert str(safe_relative_path("/etc/passwd")) == "etc/passwd"
    assert str(safe_relative_path("a\\..\\b.txt")) == "a/b.txt"
    with pytest.raises(InvalidRequest):
        safe_relative_path("../")
