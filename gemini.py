from __future__ import annotations

import base64
import json
import time
from typing import Any, Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from errors import ExternalServiceFailure
from retry import RetryPolicy

API_ROOT = "https://generativelanguage.googleapis.com/v1beta/models"

_decoder = json.JSONDecoder()


def extract_json_object(text: str) -> Optional[dict]:
    """First well-formed JSON object embedded in ``text`` (prose and fences ok)."""
    return _extract_first(text, "{", dict)


def extract_json_array(text: str) -> Optional[list]:
    return _extract_first(text, "[", list)


def _extract_first(text: str, opener: str, kind: type) -> Optional[Any]:
    if not text:
        return None
    pos = text.find(opener)
    while pos != -1:
        try:
            value, _end = _decoder.raw_decode(text, pos)
        except json.JSONDecodeError:
            pos = text.find(opener, pos + 1)
            continue
        if isinstance(value, kind):
            return value
        pos = text.find(opener, pos + 1)
    return None


class GeminiClient:
    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-2.0-flash",
        *,
        timeout_secs: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_secs = timeout_secs
        self.retry_policy = retry_policy or RetryPolicy()

    @classmethod
    def from_settings(cls, settings) -> "GeminiClient":
        return cls(
            settings.gemini_api_key,
            settings.gemini_model,
            timeout_secs=settings.ai_timeout_secs,
            retry_policy=RetryPolicy.from_settings(settings),
        )

    def generate(
        self,
        prompt: str,
        *,
        image: Optional[bytes] = None,
        mime_type: str = "image/jpeg",
        temperature: float = 0.1,
        max_output_tokens: int = 500,
    ) -> str:
        if not self.api_key:
            raise ExternalServiceFailure("Gemini API key is not configured")
        parts: list[dict[str, Any]] = [{"text": prompt}]
        if image is not None:
            parts.append(
                {
                    "inline_data": {
                        "mime_type": mime_type,
                        "data": base64.b64encode(image).decode("ascii"),
                    }
                }
            )
        payload = {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_output_tokens,
            },
        }
        deadline = time.monotonic() + self.timeout_secs
        response = self.retry_policy.call(
            self._post,
            payload,
            deadline,
            retry_on=(URLError, TimeoutError),
            deadline_secs=self.timeout_secs,
        )
        return _response_text(response)

    def _post(self, payload: dict, deadline: float) -> dict:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ExternalServiceFailure("Gemini request timed out")
        req = Request(
            f"{API_ROOT}/{self.model}:generateContent",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "x-goog-api-key": self.api_key,
            },
            method="POST",
        )
        with urlopen(req, timeout=remaining) as resp:
            return json.loads(resp.read().decode("utf-8"))


def _response_text(payload: dict) -> str:
    try:
        parts = payload["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ExternalServiceFailure("Unexpected Gemini response structure") from exc
    return "\n".join(part["text"] for part in parts if part.get("text"))
