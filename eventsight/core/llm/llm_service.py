# ============================================================================
# eventsight/core/llm/llm_service.py
# ============================================================================
#
# Large Language Model (LLM) Service for Eventsight
#
# Text completion over any OpenAI-compatible endpoint. Two delivery modes:
#   - buffered: returns the cleaned completion text
#   - streamed: writes each delta to an output sink and returns None
#
# The OpenAI SDK client is synchronous; calls run in worker threads so the
# event loop is never blocked.
#
# ============================================================================

import asyncio
import logging
import threading
from typing import Dict, Optional

from openai import OpenAI

from eventsight.core.exceptions import LLMUnavailableError, PromptTooLongError
from eventsight.core.llm.streaming import OutputSink
from eventsight.core.models.llm_models import (
    LLMConnectionStatus,
    LLMTaskConfig,
    LLMTaskType,
)
from eventsight.core.utils.text_utils import clean_llm_response

logger = logging.getLogger("eventsight.llm")

DEFAULT_SYSTEM_PROMPT = "You are a helpful analytics assistant."


class LLMService:
    """
    Completion service with per-task model routing.

    Attributes:
        _client: OpenAI-compatible client, or None when not configured
        _task_configs: LLMTaskConfig per LLMTaskType
        max_prompt_chars: Prompts longer than this are rejected before sending
    """

    def __init__(
        self,
        client: Optional[OpenAI],
        task_configs: Dict[LLMTaskType, LLMTaskConfig],
        max_prompt_chars: int = 120_000,
        base_url: Optional[str] = None,
    ):
        self._client = client
        self._task_configs = task_configs
        self.max_prompt_chars = max_prompt_chars
        self._base_url = base_url

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def _config_for(self, task_type: LLMTaskType) -> LLMTaskConfig:
        return self._task_configs.get(task_type) or self._task_configs[LLMTaskType.STANDARD]

    def _build_request(
        self,
        prompt: str,
        task_type: LLMTaskType,
        model: Optional[str],
        system_prompt: Optional[str],
        temperature: Optional[float],
        max_tokens: Optional[int],
    ) -> dict:
        if len(prompt) > self.max_prompt_chars:
            raise PromptTooLongError(len(prompt), self.max_prompt_chars)
        if not self._client:
            raise LLMUnavailableError("LLM client not available")

        config = self._config_for(task_type)
        request = {
            "model": model or config.model,
            "messages": [
                {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        temp = temperature if temperature is not None else config.temperature
        if temp is not None:
            request["temperature"] = temp
        tokens = max_tokens or config.max_tokens
        if tokens:
            request["max_tokens"] = tokens
        return request

    async def complete(
        self,
        prompt: str,
        task_type: LLMTaskType = LLMTaskType.STANDARD,
        model: Optional[str] = None,
        stream: bool = False,
        sink: Optional[OutputSink] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Optional[str]:
        """
        Run a completion.

        Args:
            prompt: User prompt
            task_type: Selects the routed model when ``model`` is not given
            model: Explicit model override
            stream: Write deltas to ``sink`` instead of returning text
            sink: Required when ``stream`` is True

        Returns:
            The cleaned completion text, or None in streamed mode

        Raises:
            PromptTooLongError: prompt exceeds ``max_prompt_chars``
            LLMUnavailableError: no client, or the provider call failed
        """
        request = self._build_request(
            prompt, task_type, model, system_prompt, temperature, max_tokens
        )

        if stream:
            if sink is None:
                raise ValueError("stream=True requires an output sink")
            await self._stream(request, sink)
            return None

        def _sync_call():
            return self._client.chat.completions.create(**request)

        try:
            resp = await asyncio.to_thread(_sync_call)
        except Exception as e:
            logger.error("LLM completion failed (model=%s): %s", request["model"], e)
            raise LLMUnavailableError(f"LLM completion failed: {e}") from e

        content = resp.choices[0].message.content or ""
        return clean_llm_response(content)

    async def _stream(self, request: dict, sink: OutputSink) -> None:
        """
        Pump deltas from the SDK's blocking iterator into ``sink``, one await per chunk.

        If the consumer stops early (the sink raised, or the task was
        cancelled) the worker thread stops reading and closes the SDK stream.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        done = object()
        cancelled = threading.Event()

        def _produce():
            response = None
            try:
                response = self._client.chat.completions.create(stream=True, **request)
                for chunk in response:
                    if cancelled.is_set():
                        break
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta.content
                    if delta:
                        loop.call_soon_threadsafe(queue.put_nowait, delta)
            except Exception as e:
                if not cancelled.is_set():
                    loop.call_soon_threadsafe(queue.put_nowait, e)
            finally:
                if response is not None and hasattr(response, "close"):
                    response.close()
                if not cancelled.is_set():
                    loop.call_soon_threadsafe(queue.put_nowait, done)

        producer = loop.run_in_executor(None, _produce)
        try:
            while True:
                item = await queue.get()
                if item is done:
                    break
                if isinstance(item, Exception):
                    logger.error("LLM stream failed (model=%s): %s", request["model"], item)
                    raise LLMUnavailableError(f"LLM stream failed: {item}") from item
                await sink.write(item)
        finally:
            if not producer.done():
                cancelled.set()
        await producer

    async def test_connection(self) -> LLMConnectionStatus:
        config = self._config_for(LLMTaskType.STANDARD)
        if not self._client:
            return LLMConnectionStatus(connected=False, error="LLM client not configured")
        try:
            await self.complete("ping", max_tokens=5)
            return LLMConnectionStatus(connected=True, endpoint=self._base_url, model=config.model)
        except Exception as e:
            return LLMConnectionStatus(
                connected=False, endpoint=self._base_url, model=config.model, error=str(e)
            )
