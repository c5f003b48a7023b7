from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI

from careerflow.config import Settings
from careerflow.types import ModelResponse, ProviderName, UsageMetrics

logger = logging.getLogger(__name__)


class ProviderNotConfiguredError(RuntimeError):
    pass


@dataclass(slots=True)
class ProviderConfig:
    name: ProviderName
    base_url: str
    api_key: str
    model: str
    timeout_sec: float
    max_output_tokens: int | None = None


class LLMProvider:
    def __init__(self, config: ProviderConfig):
        self.config = config
        self.client = AsyncOpenAI(
            base_url=config.base_url,
            api_key=config.api_key or "unset",
            timeout=float(config.timeout_sec),
        )

    @property
    def configured(self) -> bool:
        return bool(self.config.api_key)

    async def complete_text(
        self,
        *,
        prompt: str,
        system: str | None = None,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> ModelResponse:
        if not self.configured:
            raise ProviderNotConfiguredError(f"{self.config.name} API key is not configured")

        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict[str, Any] = {"model": self.config.model, "messages": messages}
        if temperature is not None:
            kwargs["temperature"] = temperature
        if self.config.max_output_tokens:
            kwargs["max_tokens"] = self.config.max_output_tokens
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self.client.chat.completions.create(**kwargs)

        raw = response.model_dump() if hasattr(response, "model_dump") else {}
        if not isinstance(raw, dict):
            raw = {"raw": raw}
        return ModelResponse(
            content=self._extract_chat_text(response),
            usage=self._extract_usage(response),
            raw=raw,
        )

    async def complete_json(
        self, *, prompt: str, system: str | None = None, temperature: float | None = None
    ) -> tuple[dict[str, Any], UsageMetrics]:
        response = await self.complete_text(
            prompt=prompt, system=system, temperature=temperature, json_mode=True
        )
        return parse_json(response.content), response.usage

    @staticmethod
    def _extract_chat_text(response: Any) -> str:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""

        message = getattr(choices[0], "message", None)
        if message is None:
            return ""

        content = getattr(message, "content", "")
        if isinstance(content, str):
            return content
        if content is None:
            return ""
        return str(content)

    def _extract_usage(self, response: Any) -> UsageMetrics:
        usage = getattr(response, "usage", None)
        if usage is None:
            return UsageMetrics(provider=self.config.name)

        # DeepSeek reports cache hits at the top level, OpenAI-compatible APIs under prompt_tokens_details
        cached = getattr(usage, "prompt_cache_hit_tokens", None)
        if cached is None:
            details = getattr(usage, "prompt_tokens_details", None)
            cached = getattr(details, "cached_tokens", None) if details is not None else None

        return UsageMetrics(
            provider=self.config.name,
            prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            cached_tokens=int(cached or 0),
        )


def parse_json(content: str) -> dict[str, Any]:
    candidate = content.strip()
    if not candidate:
        return {}

    if "```" in candidate:
        parts = candidate.split("```")
        for part in parts:
            part = part.strip()
            if part.startswith("json"):
                part = part[4:].strip()
            if part.startswith("{") and part.endswith("}"):
                candidate = part
                break

    try:
        value = json.loads(candidate)
        return value if isinstance(value, dict) else {}
    except json.JSONDecodeError:
        logger.warning("Failed to parse JSON model output")
        return {}


class ProviderPool:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._deepseek: LLMProvider | None = None
        self._gemini: LLMProvider | None = None

    def deepseek(self) -> LLMProvider:
        if self._deepseek is None:
            self._deepseek = LLMProvider(
                ProviderConfig(
                    name="deepseek",
                    base_url=self.settings.deepseek_base_url,
                    api_key=self.settings.deepseek_api_key,
                    model=self.settings.deepseek_model,
                    timeout_sec=self.settings.analysis_timeout_sec,
                )
            )
        return self._deepseek

    def gemini(self) -> LLMProvider:
        if self._gemini is None:
            self._gemini = LLMProvider(
                ProviderConfig(
                    name="gemini",
                    base_url=self.settings.gemini_base_url,
                    api_key=self.settings.gemini_api_key,
                    model=self.settings.gemini_model,
                    timeout_sec=self.settings.portfolio_timeout_sec,
                    max_output_tokens=self.settings.gemini_max_output_tokens,
                )
            )
        return self._gemini
