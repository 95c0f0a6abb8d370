from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ValidationError


DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-1.5-flash"


class GeminiError(RuntimeError):
    """Base error for the Gemini client."""


class GeminiApiError(GeminiError):
    """API returned an error payload or an unusable response."""


class _Part(BaseModel):
    text: Optional[str] = None


class _Content(BaseModel):
    parts: List[_Part] = []


class _Candidate(BaseModel):
    content: Optional[_Content] = None
    finishReason: Optional[str] = None


class _GenerateResponse(BaseModel):
    candidates: List[_Candidate] = []


class GeminiClient:
    """
    Minimal client for the Gemini `generateContent` REST endpoint.

    Notes
    - Single-turn text prompts only; the answer is the concatenated text parts
      of the first candidate.
    - Network errors, 429 and 5xx are retried with exponential backoff.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        max_attempts: int = 3,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._max_attempts = max_attempts
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "GeminiClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def generate(self, prompt: str) -> str:
        """Return the model's text answer for `prompt`."""
        body = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        data = self._request(body)
        try:
            parsed = _GenerateResponse.model_validate(data)
        except ValidationError as ve:
            raise GeminiApiError(f"Failed to parse generateContent payload: {ve}") from ve

        if not parsed.candidates or parsed.candidates[0].content is None:
            raise GeminiApiError("No candidates in generateContent response")
        text = "".join(p.text or "" for p in parsed.candidates[0].content.parts).strip()
        if not text:
            reason = parsed.candidates[0].finishReason or "unknown"
            raise GeminiApiError(f"Empty answer from model (finishReason={reason})")
        return text

    # --------------- Internal ---------------
    def _request(self, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._base_url}/models/{self._model}:generateContent"
        attempt = 0
        backoff = 1.0
        last_exc: Optional[Exception] = None
        while attempt < self._max_attempts:
            try:
                resp = self._client.post(url, params={"key": self._api_key}, json=body)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if resp.status_code == 200:
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise GeminiApiError("Failed to parse JSON from Gemini API") from exc
                if resp.status_code in (429, 500, 502, 503, 504):
                    last_exc = GeminiApiError(f"HTTP {resp.status_code} from Gemini")
                else:
                    raise GeminiApiError(f"HTTP {resp.status_code} from Gemini: {resp.text[:200]}")

            attempt += 1
            if attempt < self._max_attempts:
                time.sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        if last_exc is not None:
            raise GeminiError("Failed request after retries") from last_exc
        raise GeminiError("Failed request after retries (unknown error)")


__all__ = ["GeminiClient", "GeminiError", "GeminiApiError"]
