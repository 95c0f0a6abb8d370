from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from chat.responder import reply_for
from common.config import ConfigurationError, Settings, load_settings
from common.gemini import GeminiClient
from common.qr import render_qr_png
from common.telegram import TelegramClient
from pairing.client import AutomationClientError, BridgeClient
from pairing.machine import PairingStateMachine, StartResult
from relay.commands import CommandPoller
from relay.notifier import DeliveryFailed, NoCodeAvailable, NotConfigured, NotificationRelay, RelayError
from state.models import ClientEvent, IncomingMessage, PairingStatus
from state.s3_store import S3SessionStore, StoreUnavailable


logger = logging.getLogger(__name__)

RELAY_TIMEOUT = 10.0

_START_MESSAGES = {
    StartResult.READY: "WhatsApp bot is running and ready.",
    StartResult.CONNECTING: "WhatsApp client is already connecting; fetch /qr to pair if needed.",
    StartResult.INITIALIZING: "WhatsApp client is initializing. Fetch /qr to scan the pairing code if needed.",
}

_QR_MESSAGES = {
    PairingStatus.CONNECTING: "Waiting for the client to issue a pairing code.",
    PairingStatus.READY: "Client is already paired; no QR code needed.",
    PairingStatus.DISCONNECTED: "Client is disconnected; call /start to pair again.",
}


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "error": code, "message": message})


def _build_store(settings: Settings) -> S3SessionStore:
    try:
        return S3SessionStore(
            bucket=settings.session_bucket,
            fernet_key=settings.session_fernet_key,
            key_prefix=settings.session_key_prefix,
            region_name=settings.aws_region,
        )
    except ValueError as ex:
        # Fernet rejects keys that are not 32 urlsafe-base64 bytes
        raise ConfigurationError(f"SESSION_FERNET_KEY is malformed: {ex}") from ex


def create_app(
    settings: Optional[Settings] = None,
    *,
    store=None,
    client=None,
    machine: Optional[PairingStateMachine] = None,
    relay: Optional[NotificationRelay] = None,
    ai: Optional[GeminiClient] = None,
) -> FastAPI:
    """
    Build the HTTP application.

    Raises ConfigurationError when required settings are missing; at startup
    an unreachable session store is a ConfigurationError too.
    Collaborators can be injected (tests); otherwise they are built from
    settings.
    """
    settings = settings or load_settings()
    store = store if store is not None else _build_store(settings)
    client = client if client is not None else BridgeClient(
        settings.bridge_url, client_identity=settings.client_identity
    )
    machine = machine or PairingStateMachine(store=store, client=client, identity=settings.client_identity)
    if relay is None:
        tg = (
            TelegramClient(settings.telegram_bot_token, timeout=RELAY_TIMEOUT, max_attempts=2)
            if settings.telegram_bot_token
            else None
        )
        relay = NotificationRelay(tg, settings.telegram_chat_id)
    ai = ai or GeminiClient(settings.gemini_api_key, model=settings.gemini_model)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            store.check()
        except StoreUnavailable as e:
            raise ConfigurationError(f"Session store unreachable at startup: {e}") from e

        poller: Optional[CommandPoller] = None
        if settings.telegram_poll_commands and settings.telegram_bot_token:
            # long polling needs a read timeout above the poll timeout
            poller = CommandPoller(
                TelegramClient(settings.telegram_bot_token, timeout=35.0, max_attempts=2),
                machine=machine,
                relay=relay,
                allowed=settings.telegram_allowed_chat_ids,
            )
            poller.start()
        logger.info("Serving pairing endpoints for client %s", settings.client_identity)
        yield
        if poller is not None:
            poller.stop()

    app = FastAPI(title="wa-pairing-bot", lifespan=lifespan)
    app.state.machine = machine
    app.state.relay = relay

    # ---------------- Error mapping ----------------
    @app.exception_handler(StoreUnavailable)
    async def _store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error("Session store unavailable during %s: %s", request.url.path, exc)
        return _error(503, "store_unavailable", f"Session store unavailable, retry later: {exc}")

    @app.exception_handler(RelayError)
    async def _relay_error(request: Request, exc: RelayError):
        if isinstance(exc, NotConfigured):
            status_code = 503
        elif isinstance(exc, NoCodeAvailable):
            status_code = 409
        elif isinstance(exc, DeliveryFailed):
            status_code = 502
        else:
            status_code = 500
        content = {"status": "error", "error": exc.code, "message": str(exc)}
        if isinstance(exc, DeliveryFailed) and exc.upstream_status is not None:
            content["upstream_status"] = exc.upstream_status
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError):
        return _error(422, "validation_error", str(exc.errors()))

    @app.exception_handler(AutomationClientError)
    async def _automation_error(request: Request, exc: AutomationClientError):
        logger.error("Automation bridge error during %s: %s", request.url.path, exc)
        return _error(502, "automation_client_error", str(exc))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("Unhandled error during %s", request.url.path)
        return _error(500, "internal_error", "Internal server error")

    # ---------------- Background work ----------------
    def _auto_relay(code: str) -> None:
        try:
            relay.relay(code)
        except RelayError as e:
            logger.warning("Automatic pairing code relay skipped: %s", e)

    def _answer(message: IncomingMessage) -> None:
        reply = reply_for(message, ai)
        if not reply:
            return
        try:
            client.send_text(message.chat_id, reply)
        except AutomationClientError as e:
            logger.error("Failed to send reply to %s: %s", message.chat_id, e)

    # ---------------- Routes ----------------
    @app.get("/", response_class=PlainTextResponse)
    def index() -> str:
        snap = machine.current_status()
        return f"WhatsApp store bot is up (status: {snap.status.value})."

    @app.get("/start")
    def start():
        result = machine.start()
        return {"status": result.value, "message": _START_MESSAGES[result]}

    @app.get("/qr")
    def qr():
        snap = machine.current_status()
        if snap.status is PairingStatus.AWAITING_SCAN and snap.pairing_code:
            return Response(content=render_qr_png(snap.pairing_code), media_type="image/png")
        if snap.status is PairingStatus.IDLE:
            return JSONResponse(
                status_code=404,
                content={"status": snap.status.value, "message": "Client has not been started; call /start first."},
            )
        return {"status": snap.status.value, "message": _QR_MESSAGES[snap.status]}

    @app.get("/status")
    def status():
        snap = machine.current_status()
        return {
            "status": snap.status.value,
            "pairing_code_available": snap.pairing_code is not None,
            "client_identity": snap.client_identity,
            "resumed": snap.resumed,
            "last_reason": snap.last_reason,
        }

    @app.post("/relay")
    def relay_code():
        delivered = relay.relay_current(machine)
        return {
            "status": "delivered",
            "message": "Pairing code sent to the operator chat.",
            "chat_id": delivered.chat_id,
            "message_id": delivered.message_id,
        }

    @app.post("/logout")
    def logout():
        machine.logout()
        return {"status": machine.current_status().status.value, "message": "Logged out; stored session erased."}

    @app.post("/events")
    def events(
        event: ClientEvent,
        background: BackgroundTasks,
        x_bridge_token: Optional[str] = Header(default=None),
    ):
        if settings.bridge_token and not hmac.compare_digest(x_bridge_token or "", settings.bridge_token):
            return _error(401, "unauthorized", "Invalid bridge token")

        if event.type == "message" and event.message is not None:
            background.add_task(_answer, event.message)
            return {"status": machine.current_status().status.value, "message": "queued"}

        try:
            snap = machine.dispatch(event)
        except ValueError as e:
            return _error(400, "bad_event", str(e))

        if (
            event.type == "qr"
            and settings.relay_on_qr
            and relay.configured
            and snap.status is PairingStatus.AWAITING_SCAN
            and snap.pairing_code == event.qr
        ):
            background.add_task(_auto_relay, snap.pairing_code)
        return {"status": snap.status.value, "message": f"{event.type} applied"}

    return app


__all__ = ["create_app"]
