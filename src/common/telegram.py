from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Union

import httpx


DEFAULT_API_BASE = "https://api.telegram.org"

ChatId = Union[int, str]


class TelegramError(RuntimeError):
    """Base error for Telegram client."""


class TelegramApiError(TelegramError):
    """API returned an error payload or unexpected structure."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TelegramClient:
    """
    Minimal Telegram Bot API client: sendMessage, sendPhoto and getUpdates.

    Notes
    - JSON request bodies, except sendPhoto which uploads multipart form data.
    - Retries transient HTTP errors and 429 with backoff, honoring `retry_after`
      when provided, up to `max_attempts` attempts in total.
    """

    def __init__(
        self,
        token: str,
        *,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 15.0,
        max_attempts: int = 5,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not token:
            raise ValueError("token is required")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._owns_client = client is None
        base_url = f"{self._api_base}/bot{self._token}"
        self._client = client or httpx.Client(base_url=base_url, timeout=self._timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "TelegramClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def send_message(
        self,
        chat_id: ChatId,
        text: str,
        *,
        parse_mode: Optional[str] = None,
        disable_notification: Optional[bool] = None,
        reply_to_message_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Send a text message; returns the Message object (as dict)."""
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode is not None:
            payload["parse_mode"] = parse_mode
        if disable_notification is not None:
            payload["disable_notification"] = disable_notification
        if reply_to_message_id is not None:
            payload["reply_to_message_id"] = reply_to_message_id
        return self._unwrap(self._request("sendMessage", json_body=payload))

    def send_photo(
        self,
        chat_id: ChatId,
        photo: bytes,
        *,
        caption: Optional[str] = None,
        filename: str = "photo.png",
        content_type: str = "image/png",
    ) -> Dict[str, Any]:
        """Upload `photo` bytes via `sendPhoto`; returns the Message object."""
        form: Dict[str, Any] = {"chat_id": str(chat_id)}
        if caption is not None:
            form["caption"] = caption
        files = {"photo": (filename, photo, content_type)}
        return self._unwrap(self._request("sendPhoto", data=form, files=files))

    def get_updates(
        self,
        *,
        offset: Optional[int] = None,
        limit: int = 100,
        timeout: int = 0,
        allowed_updates: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch pending updates with `getUpdates` (offset-based polling)."""
        payload: Dict[str, Any] = {"limit": limit, "timeout": timeout}
        if offset is not None:
            payload["offset"] = offset
        if allowed_updates is not None:
            payload["allowed_updates"] = allowed_updates
        result = self._unwrap(self._request("getUpdates", json_body=payload))
        if not isinstance(result, list):
            raise TelegramApiError("getUpdates returned a non-list result")
        return result

    # --------------- Internal ---------------
    @staticmethod
    def _unwrap(data: Any) -> Any:
        # Telegram's envelope: { ok: bool, result?: ..., description?: str }
        if not isinstance(data, dict) or "ok" not in data:
            raise TelegramApiError("Malformed response from Telegram Bot API")
        if data.get("ok") is True and "result" in data:
            return data["result"]
        desc = data.get("description") or "Telegram API error"
        code = data.get("error_code")
        raise TelegramApiError(f"{desc} (code={code})", status_code=code if isinstance(code, int) else None)

    def _request(
        self,
        method: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        while attempt < self._max_attempts:
            try:
                if files is not None:
                    resp = self._client.post(f"/{method}", data=data, files=files)
                else:
                    resp = self._client.post(f"/{method}", json=json_body)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if resp.status_code == 200:
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise TelegramApiError("Failed to parse JSON from Telegram API", status_code=200) from exc

                if resp.status_code in (429, 500, 502, 503, 504):
                    last_exc = TelegramApiError(
                        f"HTTP {resp.status_code} from Telegram", status_code=resp.status_code
                    )
                    # 429 carries { parameters: { retry_after: N } }
                    retry_after = None
                    try:
                        body = resp.json()
                        params = body.get("parameters") if isinstance(body, dict) else None
                        if isinstance(params, dict) and isinstance(params.get("retry_after"), (int, float)):
                            retry_after = float(params["retry_after"])
                    except ValueError:
                        pass
                    attempt += 1
                    if attempt < self._max_attempts:
                        time.sleep(min(retry_after if retry_after is not None else backoff, 10.0))
                        backoff = min(backoff * 2, 8.0)
                    continue

                raise TelegramApiError(
                    f"HTTP {resp.status_code} from Telegram: {resp.text[:200]}",
                    status_code=resp.status_code,
                )

            # Transport error path
            attempt += 1
            if attempt < self._max_attempts:
                time.sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        if last_exc is not None:
            raise TelegramError(f"Failed request after retries: {last_exc}") from last_exc
        raise TelegramError("Failed request after retries (unknown error)")


__all__ = [
    "TelegramClient",
    "TelegramError",
    "TelegramApiError",
]
