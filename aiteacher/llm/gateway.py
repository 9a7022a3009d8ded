"""
Gateway to the external generation service (DeepSeek by default).

All traffic goes through the OpenAI-compatible chat completions API, or the
Anthropic messages API when that provider is selected. Callers always get
text back: failures are answered by the local fallback generator.
"""

import json
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from aiteacher.llm.fallback import analyze_understanding_locally, generate_fallback_response
from aiteacher.memory.models import UnderstandingAnalysis
from aiteacher.shared.config import LLMConfig, settings
from aiteacher.shared.logging import get_logger, log_with_context
from aiteacher.shared.parsing import clamp, parse_json_response, require_dict, resolve

logger = get_logger(__name__)

Prompt = Union[str, List[Dict[str, str]]]

DEFAULT_SYSTEM_PROMPT = (
    "You are an expert AI teacher. Explain concepts clearly, adapt to the "
    "learner, and check their understanding."
)

NOT_CONFIGURED_MESSAGE = (
    "I'm sorry, the AI service is not configured properly. "
    "Please check the API key and model settings and try again."
)

# Misconfiguration: the gateway stops calling the service for the rest of the process
UNRECOVERABLE_ERRORS = (
    openai.AuthenticationError,
    openai.NotFoundError,
    anthropic.AuthenticationError,
    anthropic.NotFoundError,
)

UNDERSTANDING_PROMPT = """Analyze the student's message for understanding of these concepts: {concepts}

Student message: "{message}"

Respond with only a JSON object:
{{"isUnderstanding": true/false, "confusedConcepts": ["..."], "confidenceScore": 0.0-1.0}}"""


class LLMProvider(str, Enum):
    """Supported generation providers."""
    DEEPSEEK = "deepseek"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


def extract_chunk_content(chunk: str) -> str:
    """
    Text carried by one streamed chunk.

    Handles completion deltas, `{"content": ...}` notices and plain text.
    """
    try:
        data = json.loads(chunk)
    except (json.JSONDecodeError, TypeError):
        return chunk

    if not isinstance(data, dict):
        return chunk if isinstance(data, str) else ""

    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        delta = choices[0].get("delta") or choices[0].get("message") or {}
        return delta.get("content") or ""

    content = data.get("content")
    return content if isinstance(content, str) else ""


class StreamSession:
    """
    One streaming exchange: the abortable connection handle plus the
    accumulation buffer the orchestrator fills.
    """

    def __init__(self, session_id: Optional[str] = None):
        self.id = session_id or uuid.uuid4().hex
        self.cancelled = False
        self.closed = False
        self.chunk_count = 0
        self._parts: List[str] = []
        self._handle: Any = None

    def attach(self, handle: Any):
        """Take ownership of an open upstream stream."""
        self._handle = handle

    def accumulate(self, chunk: str) -> str:
        text = extract_chunk_content(chunk)
        self.chunk_count += 1
        if text:
            self._parts.append(text)
        return text

    @property
    def content(self) -> str:
        return "".join(self._parts)

    def cancel(self):
        """Stop delivering chunks; the connection is closed on release."""
        self.cancelled = True

    async def aclose(self):
        """Cancel and close the upstream connection now."""
        self.cancel()
        await self.release()

    async def release(self):
        if self._handle is None or self.closed:
            return
        self.closed = True
        try:
            await self._handle.close()
        except Exception as e:
            logger.warning("Failed to close stream %s: %s", self.id, e)


class LanguageModelGateway:
    """Single point of contact with the generation service."""

    def __init__(
        self,
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        config: Optional[LLMConfig] = None,
        client: Any = None,
    ):
        self.config = config or settings.llm
        self.provider = LLMProvider(provider or self.config.provider)
        self.api_key = api_key or self._configured_key()
        self.model = model or self._default_model()
        self.base_url = base_url or (
            self.config.deepseek_api_url if self.provider == LLMProvider.DEEPSEEK else None
        )
        self.temperature = self.config.temperature
        self.max_tokens = self.config.max_tokens
        self.disabled_reason: Optional[str] = None

        self.client = client if client is not None else self._build_client()

    def _configured_key(self) -> Optional[str]:
        return {
            LLMProvider.DEEPSEEK: self.config.deepseek_api_key,
            LLMProvider.OPENAI: self.config.openai_api_key,
            LLMProvider.ANTHROPIC: self.config.anthropic_api_key,
        }[self.provider]

    def _default_model(self) -> str:
        return {
            LLMProvider.DEEPSEEK: self.config.deepseek_model,
            LLMProvider.OPENAI: self.config.openai_model,
            LLMProvider.ANTHROPIC: self.config.anthropic_model,
        }[self.provider]

    def _build_client(self):
        if not self.api_key:
            logger.warning(
                "No API key configured for %s; generation runs in fallback mode", self.provider.value
            )
            return None
        if self.provider == LLMProvider.ANTHROPIC:
            return AsyncAnthropic(api_key=self.api_key, timeout=self.config.request_timeout, max_retries=0)
        return AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=self.config.request_timeout,
            max_retries=0,
        )

    def is_configured(self) -> bool:
        """True while a client exists and no unrecoverable error disabled it."""
        return self.client is not None and self.disabled_reason is None

    def disable(self, reason: str):
        """Switch to fallback mode for the rest of the process lifetime."""
        if self.disabled_reason is not None:
            return
        self.disabled_reason = reason
        log_with_context(
            logger, logging.ERROR,
            f"Generation service disabled, using fallback responses: {reason}",
            action="gateway_disabled", provider=self.provider.value, model=self.model,
        )

    def format_messages(self, prompt: Prompt) -> List[Dict[str, str]]:
        """Normalize a prompt string or message list, ensuring a leading system message."""
        if isinstance(prompt, str):
            return [
                {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ]
        messages = [{"role": m["role"], "content": m["content"]} for m in prompt]
        if not messages or messages[0]["role"] != "system":
            messages.insert(0, {"role": "system", "content": DEFAULT_SYSTEM_PROMPT})
        return messages

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def generate_response(
        self,
        prompt: Prompt,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Single-shot completion.

        Never raises: errors and fallback mode return the templated fallback text.
        """
        messages = self.format_messages(prompt)
        if not self.is_configured():
            return generate_fallback_response(messages)

        try:
            content = await self._complete(
                messages,
                temperature=self.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.max_tokens,
            )
        except UNRECOVERABLE_ERRORS as e:
            self.disable(f"{type(e).__name__} (HTTP {e.status_code})")
            return generate_fallback_response(messages)
        except Exception as e:
            log_with_context(
                logger, logging.WARNING, f"Generation request failed: {e}",
                action="generation_failed", error_type=type(e).__name__,
            )
            return generate_fallback_response(messages)

        if not content.strip():
            logger.warning("Generation service returned empty content; using fallback response")
            return generate_fallback_response(messages)
        return content

    async def _complete(self, messages: List[Dict[str, str]], temperature: float, max_tokens: int) -> str:
        if self.provider == LLMProvider.ANTHROPIC:
            system, turns = _split_system(messages)
            response = await self.client.messages.create(
                model=self.model,
                system=system,
                messages=turns,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            return "".join(getattr(block, "text", "") for block in response.content)

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return response.choices[0].message.content or ""

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def generate_streaming_response(
        self,
        prompt: Prompt,
        on_chunk: Callable[[str], None],
        on_complete: Callable[[], None],
        session: Optional[StreamSession] = None,
    ):
        """
        Stream a completion, calling `on_chunk` once per event.

        `on_complete` is called exactly once on every exit path, after the
        last `on_chunk`. Upstream errors are delivered as one
        `{"content": ...}` chunk. When the gateway is not configured a single
        notice chunk is sent without touching the network.
        """
        session = session or StreamSession()
        try:
            if session.cancelled:
                return
            if not self.is_configured():
                on_chunk(json.dumps({"content": NOT_CONFIGURED_MESSAGE}))
                return

            stream = await self._open_stream(self.format_messages(prompt))
            session.attach(stream)
            async for event in stream:
                if session.cancelled:
                    break
                chunk = self._event_payload(event)
                if chunk is not None:
                    on_chunk(chunk)
        except UNRECOVERABLE_ERRORS as e:
            self.disable(f"{type(e).__name__} (HTTP {e.status_code})")
            if not session.cancelled:
                self._emit_error(on_chunk, "The AI service rejected the request configuration.")
        except Exception as e:
            if session.cancelled:
                logger.debug("Stream %s ended after cancellation: %s", session.id, e)
            else:
                log_with_context(
                    logger, logging.WARNING, f"Streaming generation failed: {e}",
                    action="stream_failed", session_id=session.id, error_type=type(e).__name__,
                )
                self._emit_error(on_chunk, f"An error occurred while generating the response: {e}")
        finally:
            try:
                await session.release()
            finally:
                on_complete()

    async def _open_stream(self, messages: List[Dict[str, str]]):
        if self.provider == LLMProvider.ANTHROPIC:
            system, turns = _split_system(messages)
            return await self.client.messages.create(
                model=self.model,
                system=system,
                messages=turns,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                stream=True,
            )
        return await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            stream=True,
        )

    def _event_payload(self, event: Any) -> Optional[str]:
        """Serialize one upstream event as a completion-delta JSON string."""
        if self.provider == LLMProvider.ANTHROPIC:
            if getattr(event, "type", None) != "content_block_delta":
                return None
            text = getattr(event.delta, "text", None)
            if not text:
                return None
            return json.dumps({"choices": [{"index": 0, "delta": {"content": text}}]})
        return event.model_dump_json(exclude_none=True)

    @staticmethod
    def _emit_error(on_chunk: Callable[[str], None], message: str):
        try:
            on_chunk(json.dumps({"content": message}))
        except Exception as e:
            logger.error("Failed to deliver stream error chunk: %s", e)

    # ------------------------------------------------------------------
    # Analysis and probing
    # ------------------------------------------------------------------

    async def analyze_understanding(self, message: str, concepts: List[str]) -> UnderstandingAnalysis:
        """Judge whether a learner message shows understanding of the given concepts."""
        if not self.is_configured():
            return analyze_understanding_locally(message, concepts)

        reply = await self.generate_response(
            UNDERSTANDING_PROMPT.format(concepts=", ".join(concepts) or "general", message=message),
            temperature=0.2,
        )

        def build(payload) -> UnderstandingAnalysis:
            data = require_dict(payload)
            confused = data.get("confusedConcepts", [])
            if not isinstance(confused, list):
                raise TypeError("confusedConcepts must be a list")
            return UnderstandingAnalysis(
                is_understanding=bool(data.get("isUnderstanding", True)),
                confused_concepts=[str(c).lower() for c in confused],
                confidence_score=clamp(float(data.get("confidenceScore", 0.5))),
            )

        return resolve(
            parse_json_response(reply),
            build,
            lambda _: analyze_understanding_locally(message, concepts),
        )

    async def ping(self) -> bool:
        """
        Lightweight reachability check (model listing).

        Returns False when unconfigured or when the credentials are rejected;
        other failures propagate to the caller.
        """
        if not self.is_configured():
            return False
        try:
            await self.client.models.list()
        except UNRECOVERABLE_ERRORS as e:
            self.disable(f"{type(e).__name__} (HTTP {e.status_code})")
            return False
        return True


def _split_system(messages: List[Dict[str, str]]):
    system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
    turns = [m for m in messages if m["role"] != "system"]
    return system, turns
