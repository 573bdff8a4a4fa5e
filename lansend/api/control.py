"""Local control API: peers, outgoing transfers and pending incoming requests."""

import logging
import os

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from lansend.api.websocket import LOCAL_HOSTS
from lansend.receiver.decision import InteractiveDecision
from lansend.transfer.files import SendingFiles

logger = logging.getLogger(__name__)


def require_local(request: Request) -> None:
    """The control API drives this device; it is never exposed to the LAN."""
    host = request.client.host if request.client else ""
    if host not in LOCAL_HOSTS:
        raise HTTPException(status_code=403, detail="Local clients only")


router = APIRouter(prefix="/api", dependencies=[Depends(require_local)])


def peer_registry(request: Request):
    discovery = request.app.state.discovery
    if discovery is None or discovery.registry is None:
        raise HTTPException(status_code=503, detail="Discovery is not running")
    return discovery.registry


def interactive_decision(request: Request) -> InteractiveDecision:
    decision = request.app.state.receiver.decision
    if not isinstance(decision, InteractiveDecision):
        raise HTTPException(status_code=409, detail="Receiver is in quick-save mode")
    return decision


# --- Devices ---

@router.get("/devices")
async def list_devices(registry=Depends(peer_registry)):
    """Return the live peers."""
    return {"devices": [p.model_dump(mode="json") for p in registry.peers()]}


# --- Outgoing transfers ---

class CreateTransferBody(BaseModel):
    fingerprint: str
    file_paths: list[str] = []
    text: str | None = None


@router.post("/transfers", status_code=202)
async def create_transfer(body: CreateTransferBody, request: Request, registry=Depends(peer_registry)):
    """
    Start sending files (read from disk by absolute path) and/or a text
    message to a peer. Progress and outcome arrive on the event feed.
    """
    peer = registry.get(body.fingerprint)
    if not peer:
        raise HTTPException(status_code=404, detail="Peer not found")

    files = SendingFiles()
    for path in body.file_paths:
        if os.path.isdir(path):
            files.add_dir(path)
        elif os.path.isfile(path):
            files.add_file(path)
        else:
            logger.warning(f"Skipping invalid file path: {path}")
    if body.text:
        files.add_text(body.text)

    if not files:
        raise HTTPException(status_code=400, detail="Nothing to send")

    request.app.state.transfers.start_send(peer, files)
    return {
        "files": [f.metadata.to_wire() for f in files],
        "message": f"Sending {len(files)} file(s) to {peer.device.alias}",
    }


@router.post("/transfers/cancel")
async def cancel_transfers(request: Request, session_id: str | None = None):
    """Cancel one outgoing session, or all of them."""
    cancelled = await request.app.state.transfers.cancel(session_id)
    if session_id and not cancelled:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"status": "cancelled" if cancelled else "idle"}


# --- Incoming requests ---

@router.get("/requests")
async def list_requests(decision: InteractiveDecision = Depends(interactive_decision)):
    """Incoming transfers waiting for a decision."""
    return {
        "requests": [
            {
                "session_id": r.session_id,
                "sender": r.sender.to_wire(),
                "files": {fid: meta.to_wire() for fid, meta in r.files.items()},
                "duplicates": sorted(r.duplicates),
            }
            for r in decision.pending()
        ]
    }


class RespondBody(BaseModel):
    file_ids: list[str] | None = None


@router.post("/requests/{session_id}/accept")
async def accept_request(
    session_id: str,
    body: RespondBody | None = None,
    decision: InteractiveDecision = Depends(interactive_decision),
):
    """Accept all files of a request, or only `file_ids`."""
    if body and body.file_ids is not None:
        answered = decision.respond(session_id, set(body.file_ids))
    else:
        answered = decision.accept_all(session_id)
    if not answered:
        raise HTTPException(status_code=404, detail="No pending request")
    return {"status": "accepted"}


@router.post("/requests/{session_id}/reject")
async def reject_request(session_id: str, decision: InteractiveDecision = Depends(interactive_decision)):
    if not decision.decline(session_id):
        raise HTTPException(status_code=404, detail="No pending request")
    return {"status": "rejected"}
