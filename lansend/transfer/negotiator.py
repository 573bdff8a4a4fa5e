"""
Session Negotiator: the sender side of the prepare-upload handshake.
"""

import logging
from dataclasses import dataclass, field

import httpx
from pydantic import ValidationError

from lansend.config import CONNECT_TIMEOUT, DECISION_TIMEOUT, INFO_PATH, PREPARE_UPLOAD_PATH
from lansend.discovery.identity import IdentityProvider
from lansend.discovery.models import RegistryEntry
from lansend.errors import (
    CancelledByUser,
    NegotiationError,
    NegotiationRejected,
    NegotiationUnreachable,
    PeerVerificationError,
)
from lansend.transfer.models import (
    CancellationSignal,
    PrepareUploadResponse,
    SessionState,
    TransferManifest,
)

logger = logging.getLogger(__name__)

# Status codes a receiver answers prepare-upload with, besides 200
REJECTION_REASONS = {
    204: "nothing-selected",
    403: "declined",
    409: "busy",
}


def create_client(**kwargs) -> httpx.AsyncClient:
    """
    HTTP client for talking to peers.

    Peers use self-signed certificates, so chain validation is off; identity
    is checked by fingerprint instead. The read timeout covers a receiver
    waiting for its user to accept.
    """
    kwargs.setdefault("verify", False)
    kwargs.setdefault(
        "timeout", httpx.Timeout(DECISION_TIMEOUT + CONNECT_TIMEOUT, connect=CONNECT_TIMEOUT)
    )
    return httpx.AsyncClient(**kwargs)


def peer_certificate(response: httpx.Response) -> bytes | None:
    """DER certificate presented on the TLS connection of `response`, if any."""
    stream = response.extensions.get("network_stream")
    if stream is None:
        return None
    ssl_object = stream.get_extra_info("ssl_object")
    if ssl_object is None:
        return None
    return ssl_object.getpeercert(binary_form=True)


@dataclass
class SessionHandle:
    """An accepted session as seen by the sender."""
    session_id: str
    peer: RegistryEntry
    manifest: TransferManifest
    tokens: dict[str, str]
    rejected: list[str] = field(default_factory=list)
    verified: bool = False
    state: SessionState = SessionState.ACCEPTED
    signal: CancellationSignal = field(default_factory=CancellationSignal)


class SessionNegotiator:
    """Posts a manifest to a peer and interprets the answer."""

    def __init__(self, identity: IdentityProvider, client: httpx.AsyncClient) -> None:
        self.identity = identity
        self.client = client

    async def negotiate(
        self,
        peer: RegistryEntry,
        manifest: TransferManifest,
        signal: CancellationSignal | None = None,
    ) -> SessionHandle:
        """
        Send a prepare-upload request to `peer`.

        Over HTTPS the peer certificate is checked on a request without
        payload before the manifest is sent, and again on the answer.

        Raises:
            NegotiationRejected: the peer declined, or accepted no file.
            NegotiationUnreachable: no answer, or the connection failed.
            PeerVerificationError: HTTPS certificate does not match the fingerprint.
            CancelledByUser: `signal` was set before the request went out.
        """
        signal = signal or CancellationSignal()
        if signal.is_set():
            raise CancelledByUser()

        url = f"{peer.base_url}{PREPARE_UPLOAD_PATH}"
        logger.info(f"Requesting upload of {len(manifest.files)} file(s) to {peer.device.alias} ({url})")

        if peer.device.https:
            await self._check_certificate(peer)

        certificate = None
        try:
            async with self.client.stream("POST", url, json=manifest.to_wire()) as response:
                if peer.device.https:
                    certificate = peer_certificate(response)
                await response.aread()
        except httpx.TransportError as e:
            raise NegotiationUnreachable(f"{peer.device.alias} unreachable: {e!r}") from e

        verified = self._verify_peer(peer, certificate)

        if response.status_code != 200:
            reason = REJECTION_REASONS.get(response.status_code, "status")
            logger.info(f"{peer.device.alias} rejected the request: {reason} ({response.status_code})")
            raise NegotiationRejected(reason, status=response.status_code)

        try:
            answer = PrepareUploadResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise NegotiationError(f"malformed prepare-upload response: {e.error_count()} errors") from e

        # Tokens for ids we never asked for are ignored
        tokens = {fid: tok for fid, tok in answer.files.items() if fid in manifest.files}
        if not tokens:
            raise NegotiationRejected("nothing-selected", status=response.status_code)

        rejected = [fid for fid in manifest.files if fid not in tokens]
        logger.info(
            f"Session {answer.session_id} accepted: {len(tokens)} file(s), "
            f"{len(rejected)} rejected"
        )
        return SessionHandle(
            session_id=answer.session_id,
            peer=peer,
            manifest=manifest,
            tokens=tokens,
            rejected=rejected,
            verified=verified,
            signal=signal,
        )

    async def _check_certificate(self, peer: RegistryEntry) -> None:
        try:
            async with self.client.stream("GET", f"{peer.base_url}{INFO_PATH}") as response:
                certificate = peer_certificate(response)
        except httpx.TransportError as e:
            raise NegotiationUnreachable(f"{peer.device.alias} unreachable: {e!r}") from e
        self._verify_peer(peer, certificate)

    def _verify_peer(self, peer: RegistryEntry, certificate: bytes | None) -> bool:
        if not peer.device.https:
            logger.warning(
                f"Plain HTTP to {peer.device.alias}: peer identity not verified, relying on LAN trust"
            )
            return False
        if not self.identity.verify(peer.fingerprint, certificate):
            raise PeerVerificationError(
                f"certificate of {peer.ip_address} does not match fingerprint {peer.fingerprint[:16]}..."
            )
        return True
