"""
LLM Service - OpenAI API wrapper for chat completions

Provides:
- Chat completion (streaming and non-streaming) with retries
- Token counting for history budgeting
- Audio transcription (Whisper) for voice messages

Used for the agent's own turns (through the agent runtime) and for
memoryless one-shot calls: chat titles and job summaries.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import tiktoken
from openai import AsyncOpenAI, APIError, RateLimitError, APIConnectionError

from chatrelay.config import settings

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"


@dataclass
class LLMResponse:
    """Response from LLM completion"""
    content: str
    model: str
    tokens_prompt: int
    tokens_completion: int
    finish_reason: str


@dataclass
class StreamChunk:
    """Chunk from streaming response"""
    content: str
    is_final: bool
    finish_reason: Optional[str] = None


class LLMService:
    """
    OpenAI LLM Service for chat completions.

    Works against any OpenAI-compatible endpoint through ``base_url``.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ):
        api_key = api_key or settings.openai_api_key
        if not api_key:
            logger.warning("OPENAI_API_KEY not set — LLM calls will fail")
        self.api_key = api_key
        self.base_url = base_url or settings.openai_base_url
        self.client = AsyncOpenAI(api_key=api_key or "missing", base_url=self.base_url)
        self.default_model = model or settings.agent_model
        self.default_temperature = (
            temperature if temperature is not None else settings.agent_temperature
        )
        self.default_max_tokens = max_tokens or settings.agent_max_tokens

        self._encoding = None

    def _get_encoding(self):
        # Loaded on first use: tiktoken may fetch the BPE file
        if self._encoding is None:
            try:
                self._encoding = tiktoken.encoding_for_model(self.default_model)
            except KeyError:
                # Fall back to cl100k_base for newer or non-OpenAI models
                self._encoding = tiktoken.get_encoding("cl100k_base")
        return self._encoding

    def count_tokens(self, text: str) -> int:
        """Count tokens in a text string."""
        return len(self._get_encoding().encode(text))

    def count_message_tokens(self, message: Dict[str, Any]) -> int:
        """Approximate token cost of one chat message, including overhead."""
        content = message.get("content", "")
        if isinstance(content, list):
            content = " ".join(
                block.get("text", "") for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            )
        return 4 + self.count_tokens(content or "")

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> LLMResponse:
        """
        Generate a chat completion.

        Retries rate limits and connection errors with exponential backoff;
        other API errors propagate.
        """
        model = model or self.default_model
        temperature = temperature if temperature is not None else self.default_temperature
        max_tokens = max_tokens or self.default_max_tokens

        max_retries = 3
        retry_delay = 1.0

        for attempt in range(max_retries):
            try:
                response = await self.client.chat.completions.create(
                    model=model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    **kwargs
                )

                choice = response.choices[0]
                usage = response.usage

                return LLMResponse(
                    content=choice.message.content or "",
                    model=response.model,
                    tokens_prompt=usage.prompt_tokens if usage else 0,
                    tokens_completion=usage.completion_tokens if usage else 0,
                    finish_reason=choice.finish_reason or "",
                )

            except (RateLimitError, APIConnectionError) as e:
                if attempt < max_retries - 1:
                    wait_time = retry_delay * (2 ** attempt)
                    logger.warning(f"[LLM] Transient error, retrying in {wait_time}s: {e}")
                    await asyncio.sleep(wait_time)
                else:
                    raise

            except APIError as e:
                logger.error(f"[LLM] OpenAI API error: {e}")
                raise

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> AsyncGenerator[StreamChunk, None]:
        """Generate a streaming chat completion."""
        model = model or self.default_model
        temperature = temperature if temperature is not None else self.default_temperature
        max_tokens = max_tokens or self.default_max_tokens

        stream = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
            **kwargs
        )

        async for chunk in stream:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta

            if delta and delta.content:
                yield StreamChunk(content=delta.content, is_final=False)

            if choice.finish_reason:
                yield StreamChunk(content="", is_final=True, finish_reason=choice.finish_reason)

    async def transcribe(self, audio: bytes, filename: str = "voice.ogg") -> str:
        """Transcribe audio with the Whisper API. Raises on failure."""
        if not self.api_key:
            raise RuntimeError("OpenAI API key not configured for transcription")

        base_url = (self.base_url or DEFAULT_OPENAI_BASE_URL).rstrip("/")
        logger.info(f"[LLM] Transcribing {filename} ({len(audio)} bytes)")

        async with httpx.AsyncClient(timeout=60) as client:
            resp = await client.post(
                f"{base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                files={"file": (filename, audio, "audio/ogg")},
                data={"model": "whisper-1"},
            )
            resp.raise_for_status()

        return (resp.json().get("text") or "").strip()
