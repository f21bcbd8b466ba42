"""OpenAI-compatible chat-completions client."""

from __future__ import annotations

import json
import logging
from typing import Type, TypeVar

from pydantic import BaseModel

from bityield.config import Settings
from bityield.http import HttpClient
from bityield.models import ComponentHealth

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class LLMClient:
    def __init__(self, http: HttpClient, settings: Settings):
        self.http = http
        self.api_key = settings.OPENAI_API_KEY
        self.api_base = settings.OPENAI_API_BASE.rstrip("/")
        self.model = settings.OPENAI_MODEL
        self.temperature = settings.AI_TEMPERATURE
        self.max_tokens = settings.AI_MAX_TOKENS

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def chat(self, system_prompt: str, user_prompt: str, max_tokens: int | None = None, json_mode: bool = True) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": max_tokens or self.max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        resp = await self.http.post(f"{self.api_base}/chat/completions", json=payload, headers=headers)
        data = resp.json()
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        content = message.get("content") or choice.get("text") or ""
        return content.strip()

    async def chat_json(self, system_prompt: str, user_prompt: str, response_model: Type[T]) -> T:
        """Ask for a JSON object and validate it; raises on transport, JSON or schema errors."""
        raw = await self.chat(system_prompt, user_prompt)
        return response_model.model_validate(extract_json(raw))

    async def health_check(self) -> ComponentHealth:
        if not self.configured:
            return ComponentHealth(status="down", model=self.model, error="API key not configured")
        try:
            await self.chat("Reply with OK.", "ping", max_tokens=5, json_mode=False)
        except Exception as e:
            logger.error(f"LLM health check failed: {e}")
            return ComponentHealth(status="down", model=self.model, error=str(e))
        return ComponentHealth(status="up", model=self.model)


def extract_json(text: str) -> dict:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise
        return json.loads(text[start : end + 1])
