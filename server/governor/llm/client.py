from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from json import JSONDecodeError, JSONDecoder
from typing import Any, Callable

from openai import OpenAI

from governor.config import env_bool, env_float, env_int


LOGGER = logging.getLogger("governor.llm.client")


def _strip_code_fences(text: str) -> str:
    if not text.startswith("```"):
        return text
    kept = [line for line in text.splitlines() if not line.strip().startswith("```")]
    return "\n".join(kept).strip()


@dataclass
class LLMClient:
    """Thin wrapper over an OpenAI-compatible chat endpoint.

    Transport failures never reach the caller: the client logs them, returns
    None and stays unavailable for ``unavailable_cooldown_sec``.
    """

    enabled: bool
    base_url: str
    model: str
    api_key: str | None
    timeout_sec: float = 30.0
    max_output_tokens: int = 350
    max_retries: int = 0
    unavailable_cooldown_sec: float = 60.0
    debug: bool = False
    clock: Callable[[], float] = time.monotonic
    _sdk_client: OpenAI | None = None
    _unavailable_until: float = field(default=0.0)

    @classmethod
    def from_env(cls) -> "LLMClient":
        base_url = os.getenv("LLM_BASE_URL", "http://127.0.0.1:11434/v1").strip()
        model = os.getenv("LLM_MODEL", "").strip()
        # Local OpenAI-compatible servers accept any key.
        api_key = os.getenv("LLM_API_KEY", "").strip() or "local"

        return cls(
            enabled=env_bool("LLM_ENABLED", False) and bool(base_url) and bool(model),
            base_url=base_url.rstrip("/"),
            model=model,
            api_key=api_key,
            timeout_sec=env_float("LLM_TIMEOUT_SEC", 30.0, 1.0, 180.0),
            max_output_tokens=env_int("LLM_MAX_OUTPUT_TOKENS", 350, 64, 9000),
            max_retries=env_int("LLM_MAX_RETRIES", 0, 0, 5),
            unavailable_cooldown_sec=env_float("LLM_UNAVAILABLE_COOLDOWN_SEC", 60.0, 0.0, 3600.0),
            debug=env_bool("LLM_DEBUG", False),
        )

    def is_available(self) -> bool:
        return self.enabled and self.clock() >= self._unavailable_until

    def mark_unavailable(self) -> None:
        self._unavailable_until = self.clock() + self.unavailable_cooldown_sec

    def complete(self, messages: list[dict[str, str]], *, temperature: float = 0.7) -> str | None:
        """Return the assistant text, or None when the backend could not be reached."""
        if not self.is_available():
            return None

        try:
            response = self._get_sdk_client().chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=max(0.0, min(float(temperature), 2.0)),
                max_tokens=self.max_output_tokens,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            LOGGER.warning("LLM request failed type=%s detail=%r", type(exc).__name__, exc)
            self.mark_unavailable()
            return None

        try:
            payload = response.model_dump()
        except Exception:
            payload = {"response_repr": repr(response)}
        self._debug(f"LLM response prefix={json.dumps(payload, ensure_ascii=False)[:280]!r}")

        text = self._message_text(payload)
        if text is None:
            self._debug("LLM response has no assistant text")
            return ""
        return text

    def _get_sdk_client(self) -> OpenAI:
        if self._sdk_client is None:
            self._sdk_client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_sec,
                max_retries=self.max_retries,
            )
        return self._sdk_client

    def _debug(self, message: str) -> None:
        if self.debug:
            LOGGER.warning(message)

    def _message_text(self, payload: dict[str, Any]) -> str | None:
        try:
            message = payload["choices"][0]["message"]
        except (KeyError, IndexError, TypeError):
            return None
        if not isinstance(message, dict):
            return None

        content = message.get("content")
        if isinstance(content, list):
            # Some servers return content parts instead of a plain string.
            content = "".join(
                part["text"] for part in content if isinstance(part, dict) and isinstance(part.get("text"), str)
            )
        if not isinstance(content, str):
            return None
        return content.strip() or None

    def extract_json_object(self, content: str | None) -> dict[str, Any] | None:
        text = _strip_code_fences((content or "").strip())
        start = text.find("{")
        if start < 0:
            return None

        try:
            parsed, _end = JSONDecoder().raw_decode(text[start:])
        except JSONDecodeError as exc:
            self._debug(f"JSON decode failed msg={exc.msg!r} pos={exc.pos} prefix={text[:180]!r}")
            return None
        return parsed if isinstance(parsed, dict) else None
