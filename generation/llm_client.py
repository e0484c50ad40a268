"""
Generation Invoker - one call to the OpenAI chat model.

Used by:
  - pipeline/document_pipeline.py  (page transcription, with the page image)
  - pipeline/session_pipeline.py   (practice / verification generation)
  - generation/solver.py           (single question solving)

The response is streamed and accumulated under a wall-clock deadline:
  - deadline before any text      → InvocationTimeout
  - deadline after some text      → the partial text, flagged truncated
  - any other client error        → InvocationFailed

Single attempt. Retrying is the caller's decision.

Model: gpt-4o-mini  (override with LLM_MODEL env var, e.g. "gpt-4o")
"""

import asyncio
import base64
import logging
import mimetypes
from dataclasses import dataclass
from typing import List, Optional

import openai
from openai import AsyncOpenAI

import config
from pipeline.errors import InvocationFailed, InvocationTimeout

log = logging.getLogger(__name__)

DEFAULT_SYSTEM = "You are a meticulous academic assistant. Output only what is asked."


@dataclass
class ImagePayload:
    """Raw image bytes sent along with the prompt"""
    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_bytes(cls, data: bytes, filename: str = "") -> "ImagePayload":
        mime_type, _ = mimetypes.guess_type(filename)
        return cls(data=data, mime_type=mime_type or "image/png")

    def data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass
class InvocationResult:
    text: str
    tokens: int = 0
    truncated: bool = False


class GenerationInvoker:
    """
    Wraps AsyncOpenAI streaming chat completions.

    The client is created lazily on first use so the app can start (and tests
    can run) without OPENAI_API_KEY; tests pass a fake client instead.
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: str = config.LLM_MODEL):
        self._client = client
        self.model = model

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = config.OPENAI_API_KEY
            if not api_key:
                raise RuntimeError(
                    "OPENAI_API_KEY is not set. Add it to your .env file."
                )
            self._client = AsyncOpenAI(api_key=api_key)
        return self._client

    @staticmethod
    def _messages(prompt: str, system: str, image: Optional[ImagePayload]) -> list:
        if image is None:
            user_content = prompt
        else:
            user_content = [
                {"type": "image_url", "image_url": {"url": image.data_url()}},
                {"type": "text", "text": prompt},
            ]
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user_content},
        ]

    async def invoke(
        self,
        prompt: str,
        image: Optional[ImagePayload] = None,
        timeout: float = config.GENERATION_TIMEOUT_SECONDS,
        system: str = DEFAULT_SYSTEM,
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ) -> InvocationResult:
        """
        Stream one completion and return the accumulated text.

        Args:
            prompt:      User-turn instruction
            image:       Optional image sent before the instruction
            timeout:     Wall-clock deadline in seconds for the whole stream
            system:      System prompt
            temperature: Sampling temperature
            max_tokens:  Max response tokens

        Returns:
            InvocationResult with text, total tokens and the truncated flag
        """
        try:
            client = self._get_client()
        except RuntimeError as e:
            raise InvocationFailed(str(e)) from e

        request = dict(
            model=self.model,
            messages=self._messages(prompt, system, image),
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
            stream_options={"include_usage": True},
        )
        fragments: List[str] = []
        usage = {"tokens": 0}

        try:
            await asyncio.wait_for(self._collect(client, request, fragments, usage), timeout=timeout)
        except asyncio.TimeoutError:
            if not fragments:
                raise InvocationTimeout(f"No output within {timeout:.0f}s")
            log.warning(f"Deadline of {timeout:.0f}s hit after {len(fragments)} fragments; returning partial output")
            return InvocationResult(text="".join(fragments), tokens=usage["tokens"], truncated=True)
        except openai.APITimeoutError as e:
            if not fragments:
                raise InvocationTimeout(f"Model request timed out: {e}") from e
            return InvocationResult(text="".join(fragments), tokens=usage["tokens"], truncated=True)
        except openai.OpenAIError as e:
            raise InvocationFailed(f"Model request failed: {e}") from e
        except Exception as e:
            raise InvocationFailed(f"Model request failed: {type(e).__name__}: {e}") from e

        text = "".join(fragments)
        log.info(f"Model returned {len(text)} chars, {usage['tokens']} tokens")
        return InvocationResult(text=text, tokens=usage["tokens"])

    @staticmethod
    async def _collect(client: AsyncOpenAI, request: dict, fragments: List[str], usage: dict) -> None:
        # fragments/usage are filled in place so a cancelled stream keeps what arrived
        stream = await client.chat.completions.create(**request)
        async with stream:
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage["tokens"] = chunk.usage.total_tokens or 0
                for choice in chunk.choices or []:
                    content = choice.delta.content if choice.delta else None
                    if content:
                        fragments.append(content)
