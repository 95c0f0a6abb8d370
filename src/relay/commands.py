from __future__ import annotations

import logging
import re
import threading
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from common.telegram import TelegramClient, TelegramError
from pairing.client import AutomationClientError
from state.s3_store import StoreUnavailable

from .notifier import NotificationRelay, RelayError


logger = logging.getLogger(__name__)

ChatId = Union[int, str]

_QR_RE = re.compile(r"^\s*/qr(@\w+)?\s*$", re.IGNORECASE)
_STATUS_RE = re.compile(r"^\s*/status(@\w+)?\s*$", re.IGNORECASE)
_START_RE = re.compile(r"^\s*/start(@\w+)?\s*$", re.IGNORECASE)
_LOGOUT_RE = re.compile(r"^\s*/logout(@\w+)?\s*$", re.IGNORECASE)

HELP_TEXT = "Commands: /qr (send pairing QR), /status, /start (begin pairing), /logout"


def _norm_handle(s: str) -> str:
    return s.strip().lstrip("@").lower()


def is_chat_allowed(chat: Dict[str, Any], allowed: FrozenSet[ChatId]) -> bool:
    """True if the chat's id, or its @username, is on the allow-list."""
    chat_id = chat.get("id")
    if isinstance(chat_id, int) and chat_id in allowed:
        return True
    username = chat.get("username")
    if isinstance(username, str) and username:
        handles = {_norm_handle(a) for a in allowed if isinstance(a, str)}
        return _norm_handle(username) in handles
    return False


def _next_offset(updates: List[Dict[str, Any]], current: Optional[int]) -> Optional[int]:
    """Telegram expects last processed update_id + 1 to confirm earlier updates."""
    out = current
    for upd in updates:
        uid = upd.get("update_id") if isinstance(upd, dict) else None
        if isinstance(uid, int) and (out is None or uid + 1 > out):
            out = uid + 1
    return out


def _status_text(machine) -> str:
    snap = machine.current_status()
    text = f"WhatsApp client status: {snap.status.value}"
    if snap.last_reason:
        text += f" (last reason: {snap.last_reason})"
    return text


def handle_command(text: str, chat_id: ChatId, *, machine, relay: NotificationRelay) -> Optional[str]:
    """Run one operator command. Returns the text reply, or None when the
    reply was the QR photo itself or the text is not a command."""
    if _QR_RE.match(text):
        try:
            relay.relay_current(machine, chat_id=chat_id)
        except RelayError as e:
            return f"Cannot send QR: {e}"
        return None
    if _STATUS_RE.match(text):
        return _status_text(machine)
    if _START_RE.match(text):
        try:
            result = machine.start()
        except (StoreUnavailable, AutomationClientError) as e:
            return f"Start failed: {e}"
        return f"Start: {result.value}"
    if _LOGOUT_RE.match(text):
        try:
            machine.logout()
        except StoreUnavailable as e:
            return f"Logged out, but the stored session could not be erased yet: {e}"
        return "Logged out; stored session erased."
    if text.strip().startswith("/"):
        return HELP_TEXT
    return None


def run_once(
    tg: TelegramClient,
    *,
    machine,
    relay: NotificationRelay,
    allowed: FrozenSet[ChatId],
    offset: Optional[int] = None,
    limit: int = 100,
    timeout: int = 0,
) -> Dict[str, Any]:
    """
    Poll Telegram getUpdates once and answer operator commands.

    - Only chats on `allowed` (plus the relay destination chat) are served;
      other chats are skipped silently but their updates are still confirmed.
    - Replies that fail to send are logged and skipped.

    Returns: {"ok": True, "received": N, "next_offset": int|None}.
    """
    permitted = set(allowed)
    if relay.chat_id not in (None, ""):
        permitted.add(relay.chat_id)  # type: ignore[arg-type]
    permitted_set = frozenset(permitted)

    updates = tg.get_updates(offset=offset, limit=limit, timeout=timeout, allowed_updates=["message"])

    replies: List[Tuple[ChatId, str]] = []
    for upd in updates:
        msg = upd.get("message") if isinstance(upd, dict) else None
        if not isinstance(msg, dict):
            continue
        text = msg.get("text")
        chat = msg.get("chat")
        if not isinstance(text, str) or not isinstance(chat, dict) or chat.get("id") is None:
            continue
        if not is_chat_allowed(chat, permitted_set):
            logger.info("Ignoring command from chat %s (not allowed)", chat.get("id"))
            continue
        reply = handle_command(text, chat["id"], machine=machine, relay=relay)
        if reply:
            replies.append((chat["id"], reply))

    for chat_id, reply in replies:
        try:
            tg.send_message(chat_id=chat_id, text=reply)
        except TelegramError as e:
            logger.warning("Failed to reply to chat %s: %s", chat_id, e)

    return {"ok": True, "received": len(updates), "next_offset": _next_offset(updates, offset)}


class CommandPoller:
    """Background thread long-polling Telegram for operator commands."""

    def __init__(
        self,
        tg: TelegramClient,
        *,
        machine,
        relay: NotificationRelay,
        allowed: FrozenSet[ChatId],
        poll_timeout: int = 25,
        error_backoff: float = 5.0,
    ) -> None:
        self._tg = tg
        self._machine = machine
        self._relay = relay
        self._allowed = allowed
        self._poll_timeout = poll_timeout
        self._error_backoff = error_backoff
        self._offset: Optional[int] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="telegram-command-poller", daemon=True)
        self._thread.start()
        logger.info("Telegram command poller started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                out = run_once(
                    self._tg,
                    machine=self._machine,
                    relay=self._relay,
                    allowed=self._allowed,
                    offset=self._offset,
                    timeout=self._poll_timeout,
                )
            except TelegramError as e:
                logger.warning("Telegram getUpdates failed: %s", e)
                self._stop.wait(self._error_backoff)
                continue
            except Exception:
                # keep the operator channel alive; the offset is unchanged so the batch is retried
                logger.exception("Command poll iteration failed")
                self._stop.wait(self._error_backoff)
                continue
            self._offset = out["next_offset"]
