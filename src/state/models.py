from __future__ import annotations

import base64
import binascii
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# Opaque serialized session; owned by the automation client, passed through as-is.
SessionBlob = bytes


class PairingStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_SCAN = "awaiting_scan"
    READY = "ready"
    DISCONNECTED = "disconnected"


class PairingSnapshot(BaseModel):
    """
    Read-only view of the process-wide pairing state.

    Fields
    - status: current lifecycle status.
    - pairing_code: the code to render as a QR image; present only while
      `status` is `awaiting_scan`.
    - client_identity: key of the stored session this state corresponds to.
    - last_reason: last disconnect/failure reason, if any.
    - resumed: True when the current cycle was started from a stored blob.
    """

    model_config = ConfigDict(frozen=True)

    status: PairingStatus = PairingStatus.IDLE
    pairing_code: Optional[str] = None
    client_identity: str
    last_reason: Optional[str] = None
    resumed: bool = False

    @model_validator(mode="after")
    def _code_only_while_awaiting_scan(self) -> "PairingSnapshot":
        awaiting = self.status is PairingStatus.AWAITING_SCAN
        if awaiting != (self.pairing_code is not None):
            raise ValueError(
                f"pairing_code must be set iff status is awaiting_scan (status={self.status.value})"
            )
        return self


class IncomingMessage(BaseModel):
    chat_id: str
    body: str = ""
    from_me: bool = False


EventType = Literal["qr", "authenticated", "ready", "disconnected", "auth_failure", "message"]


class ClientEvent(BaseModel):
    """
    One event emitted by the automation client, as posted by the bridge.

    `session` carries the base64 encoded session blob on `ready` when the
    bridge has it at hand; otherwise the blob is requested separately.
    """

    type: EventType
    qr: Optional[str] = None
    reason: Optional[str] = None
    session: Optional[str] = Field(default=None, description="base64 session blob")
    message: Optional[IncomingMessage] = None

    @model_validator(mode="after")
    def _payload_matches_type(self) -> "ClientEvent":
        if self.type == "qr" and not self.qr:
            raise ValueError("qr event requires a non-empty 'qr' payload")
        if self.type == "message" and self.message is None:
            raise ValueError("message event requires a 'message' payload")
        return self

    def session_blob(self) -> Optional[SessionBlob]:
        if self.session is None:
            return None
        try:
            return base64.b64decode(self.session, validate=True)
        except (binascii.Error, ValueError) as ex:
            raise ValueError("session is not valid base64") from ex
