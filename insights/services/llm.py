"""Language model backends used for extraction and assistant replies.

Two implementations share the :class:`LanguageModel` interface; which one
runs is decided by ``Settings.model_backend``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

from insights.config import Settings
from insights.domain.errors import DataFormatError, UpstreamModelError

logger = logging.getLogger(__name__)


class LanguageModel(Protocol):
    async def extract(self, task: str, system_prompt: str, prompt: str) -> dict:
        """Return the model's JSON object answer for an extraction *task*."""
        ...

    async def complete(self, system_prompt: str, prompt: str) -> str:
        """Return a free-text answer."""
        ...


class OpenAIModel:
    """Calls OpenAI chat completions in JSON mode."""

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout: float,
        assistant_model: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        self.client = AsyncOpenAI(api_key=api_key, timeout=timeout)
        self.model = model
        self.assistant_model = assistant_model or model
        self.timeout = timeout

    async def extract(self, task: str, system_prompt: str, prompt: str) -> dict:
        content = await self._chat(
            self.model,
            system_prompt,
            prompt,
            response_format={"type": "json_object"},
        )
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise DataFormatError("$", f"model returned invalid JSON ({exc.msg})") from exc
        if not isinstance(data, dict):
            raise DataFormatError("$", "expected a JSON object")
        return data

    async def complete(self, system_prompt: str, prompt: str) -> str:
        return await self._chat(self.assistant_model, system_prompt, prompt)

    async def _chat(self, model: str, system_prompt: str, prompt: str, **kwargs) -> str:
        from openai import OpenAIError

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=0,
                    **kwargs,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamModelError(
                f"Model call timed out after {self.timeout:g}s"
            ) from exc
        except OpenAIError as exc:
            raise UpstreamModelError(f"Model call failed: {exc}") from exc
        return response.choices[0].message.content or ""


class MockModel:
    """Offline backend returning canned answers.

    *responses* maps a task name to a dict, a callable taking the prompt, or an
    exception instance to raise. Unknown tasks answer with an empty object.
    """

    def __init__(
        self,
        responses: dict[str, Any] | None = None,
        reply: str | None = None,
    ) -> None:
        self.responses: dict[str, Any] = dict(responses or {})
        self.reply = reply
        self.calls: list[tuple[str, str]] = []

    async def extract(self, task: str, system_prompt: str, prompt: str) -> dict:
        self.calls.append((task, prompt))
        answer = self.responses.get(task, {})
        if isinstance(answer, Exception):
            raise answer
        if callable(answer):
            answer = answer(prompt)
        return json.loads(json.dumps(answer))

    async def complete(self, system_prompt: str, prompt: str) -> str:
        self.calls.append(("complete", prompt))
        if self.reply is None:
            raise UpstreamModelError("No assistant reply configured for mock model")
        return self.reply


def build_model(settings: Settings) -> LanguageModel:
    if settings.model_backend == "live":
        if not settings.openai_api_key:
            raise ValueError("INSIGHTS_OPENAI_API_KEY is required for the live model")
        logger.info("Using OpenAI model %s", settings.openai_model)
        return OpenAIModel(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout=settings.model_timeout_seconds,
            assistant_model=settings.assistant_model,
        )
    logger.info("Using mock language model")
    return MockModel()
