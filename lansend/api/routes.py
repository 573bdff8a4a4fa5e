"""Protocol routes: info, prepare-upload, upload and cancel."""

import logging

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from lansend.config import API_PREFIX
from lansend.errors import InvalidRequest, SessionNotFound
from lansend.receiver.service import ReceiverService
from lansend.transfer.models import PrepareUploadRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix=API_PREFIX)


def get_receiver(request: Request) -> ReceiverService:
    return request.app.state.receiver


def client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


@router.get("/info")
async def info(request: Request):
    """This device, as announced. Senders also use it to check our certificate."""
    return JSONResponse(request.app.state.device.to_wire())


@router.post("/prepare-upload")
async def prepare_upload(request: Request, receiver: ReceiverService = Depends(get_receiver)):
    """Negotiate a session; answers session id and one token per accepted file."""
    body = await request.body()
    try:
        manifest = PrepareUploadRequest.model_validate_json(body)
    except ValidationError as e:
        logger.debug(f"Malformed prepare-upload from {client_ip(request)}: {e}")
        raise InvalidRequest(f"malformed request: {e.error_count()} error(s)") from e

    answer = await receiver.prepare_upload(manifest, client_ip(request))
    return JSONResponse(answer.to_wire())


@router.post("/upload")
async def upload(
    request: Request,
    session_id: str | None = Query(None, alias="sessionId"),
    file_id: str | None = Query(None, alias="fileId"),
    token: str | None = Query(None),
    receiver: ReceiverService = Depends(get_receiver),
):
    """Receive the raw bytes of one file."""
    if not (session_id and file_id and token):
        raise InvalidRequest("Missing parameters")

    await receiver.upload(session_id, file_id, token, request.stream(), client_ip(request))
    return Response(status_code=200)


@router.post("/cancel")
async def cancel(
    request: Request,
    session_id: str | None = Query(None, alias="sessionId"),
    receiver: ReceiverService = Depends(get_receiver),
):
    """
    Cancel a session. Works for sessions we receive and, when the other side
    is the receiver, for sessions we send.
    """
    if not session_id:
        raise InvalidRequest("Missing parameters")

    if receiver.cancel(session_id, client_ip(request)):
        return Response(status_code=200)

    transfers = getattr(request.app.state, "transfers", None)
    if transfers is not None and await transfers.cancel_by_receiver(session_id):
        return Response(status_code=200)

    raise SessionNotFound()
