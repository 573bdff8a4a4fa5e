"""
Error taxonomy shared by the sender and the receiver.

Receiver errors carry the HTTP status the server answers with, so the
route layer never has to translate them one by one.
"""


class LocalSendError(Exception):
    """Base class for all protocol errors."""
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)


# --- Discovery ---

class DiscoveryTransient(LocalSendError):
    """Dropped packet or socket hiccup, retried on the next cycle."""


# --- Negotiation (sender side) ---

class NegotiationError(LocalSendError):
    """Prepare-upload handshake failed."""


class NegotiationRejected(NegotiationError):
    """The recipient has rejected the request."""

    def __init__(self, reason: str = "declined", status: int | None = None) -> None:
        self.reason = reason
        self.status = status
        detail = f"rejected by recipient ({reason})"
        if status is not None:
            detail += f", status {status}"
        super().__init__(detail)


class NegotiationUnreachable(NegotiationError):
    """The recipient did not answer."""


class PeerVerificationError(NegotiationError):
    """Certificate presented by the peer does not match its announced fingerprint."""


# --- Receiving ---

class ReceiveError(LocalSendError):
    """Receiver rejected an upload-side request."""


class InvalidRequest(ReceiveError):
    """Malformed or empty request."""
    status_code = 400


class SessionDeclined(ReceiveError):
    """File request declined by recipient."""
    status_code = 403


class NothingSelected(ReceiveError):
    """Nothing selected."""
    status_code = 204


class SessionNotFound(ReceiveError):
    """Invalid session id."""
    status_code = 403


class TokenInvalid(ReceiveError):
    """Invalid token."""
    status_code = 403


class SenderMismatch(ReceiveError):
    """Request does not come from the address that opened the session."""
    status_code = 403


class FileAlreadyReceived(ReceiveError):
    """File already received or in progress."""
    status_code = 409


class SessionCancelled(ReceiveError):
    """Cancelled."""
    status_code = 410


class SizeMismatch(ReceiveError):
    """Received byte count does not match the declared size."""
    status_code = 400

    def __init__(self, expected: int, received: int) -> None:
        self.expected = expected
        self.received = received
        super().__init__(f"expected {expected} bytes, received {received}")


class SizeExceeded(SizeMismatch):
    """Upload is larger than the declared size."""
    status_code = 413


class IntegrityError(ReceiveError):
    """SHA-256 of the received file does not match the manifest."""
    status_code = 400


class TransferIOError(ReceiveError):
    """Could not save file."""
    status_code = 500


# --- Transfer (sender side) ---

class CancelledByUser(LocalSendError):
    """Transfer cancelled."""
