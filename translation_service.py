"""Translation utilities backed by an OpenAI-compatible chat completions API."""

from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional


DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_TARGET_LANGUAGE = "English"

PROMPT_TEMPLATE = (
    "Translate the following text into {language}. Return only the translation:\n\n{text}"
)


class TranslationError(RuntimeError):
    """Raised when the translation service cannot complete a request."""


@dataclass
class TranslationResult:
    text: str
    model: Optional[str] = None


def build_messages(text: str, dest: str) -> List[dict]:
    return [{"role": "user", "content": PROMPT_TEMPLATE.format(language=dest, text=text)}]


def iter_sse_content(lines: Iterable[bytes]) -> Iterator[str]:
    """Yield ``delta.content`` fragments from server-sent event lines."""

    for raw in lines:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return
        try:
            payload = json.loads(data)
            content = payload["choices"][0].get("delta", {}).get("content")
        except (json.JSONDecodeError, LookupError, TypeError, AttributeError):
            continue
        if content:
            yield content


class ChatCompletionsClient:
    """Minimal client for OpenAI-compatible ``/chat/completions`` endpoints."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str = DEFAULT_MODEL,
        timeout: float = 30.0,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def translate(self, text: str, dest: str) -> TranslationResult:
        if not text:
            raise TranslationError("Cannot translate empty text")

        payload = self._post({"model": self.model, "messages": build_messages(text, dest)})
        try:
            data = json.loads(payload.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise TranslationError("Invalid response from the translation API") from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (LookupError, TypeError) as exc:  # pragma: no cover - guards against API changes
            raise TranslationError("Unexpected translation response structure") from exc

        return TranslationResult(text=(content or "").strip(), model=data.get("model", self.model))

    def stream_translate(self, text: str, dest: str) -> Iterator[str]:
        """Yield translated text fragments as the API produces them."""

        if not text:
            raise TranslationError("Cannot translate empty text")

        request = self._build_request(
            {"model": self.model, "messages": build_messages(text, dest), "stream": True}
        )
        with self._open(request) as response:
            try:
                yield from iter_sse_content(response)
            except (socket.timeout, TimeoutError) as exc:
                raise TranslationError("Translation stream timed out") from exc
            except OSError as exc:
                raise TranslationError(f"Translation stream interrupted: {exc}") from exc

    def check_connection(self) -> None:
        """Send a tiny request; raise :class:`TranslationError` on failure."""

        self._post(
            {
                "model": self.model,
                "messages": [{"role": "user", "content": "Hi"}],
                "max_tokens": 5,
            }
        )

    def _build_request(self, body: dict) -> urllib.request.Request:
        if not self.api_url or not self.api_key:
            raise TranslationError("API URL and API key must be configured")
        return urllib.request.Request(
            self.api_url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            method="POST",
        )

    def _open(self, request: urllib.request.Request):
        try:
            return urllib.request.urlopen(request, timeout=self.timeout)
        except urllib.error.HTTPError as exc:
            raise TranslationError(f"HTTP {exc.code} from the translation API") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise TranslationError("Request to the translation API timed out") from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise TranslationError("Request to the translation API timed out") from exc
            raise TranslationError("Network error while contacting the translation API") from exc

    def _post(self, body: dict) -> bytes:
        request = self._build_request(body)
        with self._open(request) as response:
            try:
                return response.read()
            except (socket.timeout, TimeoutError) as exc:
                raise TranslationError("Request to the translation API timed out") from exc
