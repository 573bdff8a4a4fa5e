"""
lansend: FastAPI application entry point.

Serves the transfer protocol endpoints, runs the receiver and the
discovery service for the lifetime of the app, and exposes the sender
through `app.state.transfers`.
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect

from lansend import __version__
from lansend.api import control
from lansend.api.routes import router
from lansend.api.websocket import ConnectionManager
from lansend.config import API_HOST, CONFIG_DIR, LOG_FORMAT, LOG_LEVEL, Settings
from lansend.discovery.identity import IdentityProvider
from lansend.discovery.service import DiscoveryService
from lansend.errors import LocalSendError
from lansend.receiver.decision import DecisionProvider
from lansend.receiver.service import ReceiverService
from lansend.transfer.manager import TransferManager

logger = logging.getLogger(__name__)


async def handle_protocol_error(request: Request, exc: LocalSendError) -> Response:
    """Protocol errors become plain-text responses with their status code."""
    status = exc.status_code
    if status == 204:
        return Response(status_code=204)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
        return Response("Internal server error", status_code=status, media_type="text/plain")
    logger.info(f"{request.method} {request.url.path} rejected ({status}): {exc}")
    return Response(str(exc), status_code=status, media_type="text/plain")


def create_app(
    settings: Settings | None = None,
    identity: IdentityProvider | None = None,
    decision: DecisionProvider | None = None,
    discovery: bool = True,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the app with its services; nothing touches the network until startup."""
    settings = settings or Settings()
    identity = identity or IdentityProvider(CONFIG_DIR)
    device = identity.device_info(settings.port, https=settings.https)

    receiver = ReceiverService(settings, decision)
    transfers = TransferManager(identity, device, client)
    discovery_service = DiscoveryService(identity, device) if discovery else None
    ws_manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info("Starting lansend services...")

        try:
            receiver.on_event(ws_manager.broadcast)
            transfers.on_event(ws_manager.handle_transfer_event)

            await receiver.start()
            if discovery_service:
                registry = await discovery_service.start()

                async def on_peer_event(event: str, entry):
                    await ws_manager.broadcast(event, entry.model_dump(mode="json"))

                registry.on_change(on_peer_event)

            logger.info(
                f"lansend ready as {device.alias}, "
                f"{'https' if settings.https else 'http'}://{API_HOST}:{settings.port}, "
                f"fingerprint {identity.fingerprint()[:16]}..."
            )

            yield

        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Shutting down lansend services...")
            await transfers.close()
            await receiver.stop()
            if discovery_service:
                await discovery_service.stop()

    app = FastAPI(title="lansend", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.identity = identity
    app.state.device = device
    app.state.receiver = receiver
    app.state.transfers = transfers
    app.state.discovery = discovery_service
    app.state.events = ws_manager

    app.add_exception_handler(LocalSendError, handle_protocol_error)
    app.include_router(router)
    app.include_router(control.router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        if not await ws_manager.connect(websocket):
            return
        try:
            while True:
                # Keep the connection alive; we don't expect client messages
                await websocket.receive_text()
        except WebSocketDisconnect:
            await ws_manager.disconnect(websocket)
        except Exception:
            await ws_manager.disconnect(websocket)

    return app


def run() -> None:
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

    settings = Settings()
    identity = IdentityProvider(CONFIG_DIR)
    app = create_app(settings, identity)

    ssl_options = {}
    if settings.https:
        ssl_options = {
            "ssl_keyfile": str(identity.key_path),
            "ssl_certfile": str(identity.cert_path),
        }

    uvicorn.run(
        app,
        host=API_HOST,
        port=settings.port,
        log_level=LOG_LEVEL.lower(),
        **ssl_options,
    )


if __name__ == "__main__":
    run()
