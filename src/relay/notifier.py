from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

from common.qr import render_qr_png
from common.telegram import TelegramApiError, TelegramClient, TelegramError
from state.models import PairingStatus


logger = logging.getLogger(__name__)

ChatId = Union[int, str]

DEFAULT_CAPTION = "Scan this QR code in WhatsApp > Linked devices to pair the store bot."


class RelayError(RuntimeError):
    """Base error for pairing code relay."""

    code = "relay_error"


class NotConfigured(RelayError):
    """Bot token or destination chat is missing."""

    code = "not_configured"


class NoCodeAvailable(RelayError):
    """There is no pairing code to send (client is not awaiting a scan)."""

    code = "no_code_available"


class DeliveryFailed(RelayError):
    """Telegram rejected the message or could not be reached."""

    code = "delivery_failed"

    def __init__(self, message: str, *, upstream_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


@dataclass(frozen=True)
class Delivered:
    pairing_code: str  # the code that was actually sent
    chat_id: ChatId
    message_id: Optional[int] = None


class NotificationRelay:
    """
    Push the current pairing code to an operator chat as a QR image.

    Only reads pairing state; `Delivered.pairing_code` is the code rendered
    at send time even if the client rotated it meanwhile.
    """

    def __init__(
        self,
        telegram: Optional[TelegramClient],
        chat_id: Optional[ChatId],
        *,
        caption: str = DEFAULT_CAPTION,
        render: Callable[[str], bytes] = render_qr_png,
    ) -> None:
        self._tg = telegram
        self._chat_id = chat_id
        self._caption = caption
        self._render = render

    @property
    def configured(self) -> bool:
        return self._tg is not None and self._chat_id not in (None, "")

    @property
    def chat_id(self) -> Optional[ChatId]:
        return self._chat_id

    def relay(self, pairing_code: Optional[str], *, chat_id: Optional[ChatId] = None) -> Delivered:
        target = chat_id if chat_id is not None else self._chat_id
        if self._tg is None or target in (None, ""):
            raise NotConfigured("Telegram bot token and destination chat id must both be set")
        if not pairing_code:
            raise NoCodeAvailable("No pairing code is available")

        image = self._render(pairing_code)
        try:
            msg = self._tg.send_photo(target, image, caption=self._caption, filename="whatsapp-qr.png")
        except TelegramApiError as e:
            logger.error("Pairing code relay to %s rejected: %s", target, e)
            raise DeliveryFailed(f"Telegram rejected the pairing code: {e}", upstream_status=e.status_code) from e
        except TelegramError as e:
            logger.error("Pairing code relay to %s failed: %s", target, e)
            raise DeliveryFailed(f"Telegram unreachable: {e}") from e

        message_id = msg.get("message_id") if isinstance(msg, dict) else None
        logger.info("Pairing code relayed to %s (message_id=%s)", target, message_id)
        return Delivered(pairing_code=pairing_code, chat_id=target, message_id=message_id)

    def relay_current(self, machine, *, chat_id: Optional[ChatId] = None) -> Delivered:
        """Relay whatever code the state machine holds right now."""
        snap = machine.current_status()
        if snap.status is not PairingStatus.AWAITING_SCAN:
            raise NoCodeAvailable(f"No pairing code while status is {snap.status.value}")
        return self.relay(snap.pairing_code, chat_id=chat_id)


__all__ = [
    "Delivered",
    "DeliveryFailed",
    "NoCodeAvailable",
    "NotConfigured",
    "NotificationRelay",
    "RelayError",
]
