"""Vision analysis collaborator.

The metering core only needs one thing from the vision provider: an
async call that takes an image and a prompt and returns an opaque result
plus the token usage it was billed for.  Prompt construction and result
parsing live elsewhere; ``OpenAIVisionService`` is the thin
OpenAI-compatible adapter used in production.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from packverify.core.config import settings
from packverify.models.schemas import TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class VisionResult:
    result_payload: Any
    token_usage: Optional[TokenUsage] = None


class VisionAnalyzer(Protocol):
    async def invoke_vision_analysis(self, image: bytes, prompt: str) -> VisionResult:
        ...


def _sniff_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


class OpenAIVisionService:
    """Calls an OpenAI-compatible chat completions endpoint with one image."""

    def __init__(self, model: Optional[str] = None, client: Any = None) -> None:
        self.model = model or settings.VISION_MODEL
        self._client = client

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, base_url=settings.OPENAI_BASE_URL)
        return self._client

    async def invoke_vision_analysis(self, image: bytes, prompt: str) -> VisionResult:
        b64 = base64.b64encode(image).decode("utf-8")
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"data:{_sniff_mime(image)};base64,{b64}"}},
                    ],
                }
            ],
        )
        content = response.choices[0].message.content if response.choices else None
        usage = getattr(response, "usage", None)
        token_usage = None
        if usage is not None:
            token_usage = TokenUsage(
                # Priced by the requested id; the response echoes a dated snapshot name
                model=self.model,
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
                total_tokens=getattr(usage, "total_tokens", None),
            )
        logger.debug("[vision] model=%s usage=%s", self.model, token_usage)
        return VisionResult(result_payload=content, token_usage=token_usage)


__all__ = ["VisionAnalyzer", "VisionResult", "OpenAIVisionService"]
