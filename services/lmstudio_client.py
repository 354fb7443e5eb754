"""HTTP client for the LM Studio text-generation server."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

import requests

from config.settings import settings

logger = logging.getLogger(__name__)


class LMStudioClientError(RuntimeError):
    """Raised when the LM Studio server returns an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LMStudioClient:
    """Wrapper around the OpenAI-compatible ``/v1/chat/completions`` endpoint."""

    _SAFE_OPTION_KEYS = {"temperature", "top_p", "max_tokens", "stop"}

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        url = base_url or settings.lmstudio_base_url
        if not url.startswith("http"):
            url = f"http://{url}"
        self.base_url = url.rstrip("/")
        self.timeout = timeout or settings.lmstudio_timeout
        self.api_key = api_key if api_key is not None else settings.lmstudio_api_key
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.post(
                url, json=payload, headers=self._headers(), timeout=self.timeout
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            message = exc.response.text if exc.response is not None else str(exc)
            raise LMStudioClientError(message, status_code=status_code) from exc
        except requests.RequestException as exc:
            raise LMStudioClientError(str(exc)) from exc
        try:
            return response.json() if response.content else {}
        except ValueError as exc:
            raise LMStudioClientError(f"Invalid JSON from LM Studio: {exc}") from exc

    @staticmethod
    def _message_content(payload: Dict[str, Any]) -> str:
        choices = payload.get("choices") or []
        if choices:
            message = (choices[0] or {}).get("message") or {}
            content = message.get("content") if isinstance(message, dict) else None
            if isinstance(content, str):
                return content
        for key in ("text", "response", "output", "content"):
            value = payload.get(key)
            if isinstance(value, str):
                return value
        return ""

    def generate(
        self,
        *,
        model: str,
        prompt: str,
        json_mode: bool = False,
        options: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Send ``prompt`` as a single user message and return the reply text."""

        messages: List[Dict[str, str]] = [{"role": "user", "content": prompt}]
        payload: Dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        for key, value in (options or {}).items():
            if key in self._SAFE_OPTION_KEYS:
                payload[key] = value
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        data = self._post("/v1/chat/completions", payload)
        return self._message_content(data)


_CLIENT_LOCK = threading.Lock()
_CLIENT: Optional[LMStudioClient] = None


def get_lmstudio_client() -> LMStudioClient:
    """Return a process-wide LM Studio client."""

    global _CLIENT
    if _CLIENT is None:
        with _CLIENT_LOCK:
            if _CLIENT is None:
                _CLIENT = LMStudioClient()
    return _CLIENT


__all__ = ["LMStudioClient", "LMStudioClientError", "get_lmstudio_client"]
