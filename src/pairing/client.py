from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from state.models import SessionBlob


logger = logging.getLogger(__name__)


class AutomationClientError(RuntimeError):
    """The automation bridge could not be reached or rejected the request."""


class AutomationClient(Protocol):
    """What the pairing state machine needs from the WhatsApp automation layer.

    Lifecycle events travel the other way: the bridge posts them to the
    `/events` webhook and they are dispatched into the state machine.
    """

    def initialize(self, session: Optional[SessionBlob]) -> None: ...

    def session_blob(self) -> Optional[SessionBlob]: ...

    def logout(self) -> None: ...

    def send_text(self, chat_id: str, text: str) -> None: ...


class BridgeClient:
    """
    HTTP client for the WhatsApp automation bridge (a whatsapp-web.js or
    Baileys sidecar).

    Endpoints
    - POST /initialize  {clientId, session: base64|null}
    - GET  /session     -> {session: base64|null}
    - POST /logout      {clientId}
    - POST /messages    {clientId, to, text}
    """

    def __init__(
        self,
        base_url: str,
        *,
        client_identity: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._identity = client_identity
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "BridgeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def initialize(self, session: Optional[SessionBlob]) -> None:
        encoded = base64.b64encode(session).decode("ascii") if session is not None else None
        self._call("POST", "/initialize", {"clientId": self._identity, "session": encoded})
        logger.info("Bridge initialize requested (resume=%s)", session is not None)

    def session_blob(self) -> Optional[SessionBlob]:
        data = self._call("GET", "/session", params={"clientId": self._identity})
        encoded = data.get("session")
        if encoded is None:
            return None
        if not isinstance(encoded, str):
            raise AutomationClientError("Bridge returned a non-string session")
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as ex:
            raise AutomationClientError("Bridge returned a session that is not valid base64") from ex

    def logout(self) -> None:
        self._call("POST", "/logout", {"clientId": self._identity})

    def send_text(self, chat_id: str, text: str) -> None:
        self._call("POST", "/messages", {"clientId": self._identity, "to": chat_id, "text": text})

    def _call(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            resp = self._client.request(method, path, json=body, params=params)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise AutomationClientError(f"Bridge {method} {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise AutomationClientError(f"Bridge {method} {path} returned HTTP {resp.status_code}: {resp.text[:200]}")
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as exc:
            raise AutomationClientError(f"Bridge {method} {path} returned invalid JSON") from exc
        return data if isinstance(data, dict) else {}


__all__ = ["AutomationClient", "AutomationClientError", "BridgeClient"]
