"""Model client used by the enrichment service.

The portal talks to the language model through a single
``generate(prompt, media=None) -> str`` call so the provider can be swapped
per environment and replaced by a scripted fake in tests.
"""

import asyncio
import base64
import json
import logging
import re
from typing import Any, Callable, Iterable, List, Optional, Protocol, Sequence, Tuple, TypeVar

import openai as openai_mod
from openai import AsyncOpenAI

from .models import ImageData

logger = logging.getLogger(__name__)

T = TypeVar("T")

_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


class ModelClient(Protocol):
    async def generate(self, prompt: str, media: Optional[Sequence[ImageData]] = None) -> str:
        ...


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------
def image_part(image: ImageData) -> dict:
    encoded = base64.b64encode(image.content).decode("ascii")
    return {"type": "image_url",
            "image_url": {"url": f"data:{image.mime_type};base64,{encoded}"}}


class OpenAIModelClient:
    def __init__(self, api_key: str, model: str, max_retries: int = 3,
                 client: Optional[AsyncOpenAI] = None):
        self.model = model
        self.max_retries = max_retries
        self._client = client or AsyncOpenAI(api_key=api_key)

    async def generate(self, prompt: str, media: Optional[Sequence[ImageData]] = None) -> str:
        if media:
            content: Any = [{"type": "text", "text": prompt}] + [image_part(m) for m in media]
        else:
            content = prompt
        messages = [{"role": "user", "content": content}]
        for attempt in range(self.max_retries):
            try:
                resp = await self._client.chat.completions.create(model=self.model, messages=messages)
                return (resp.choices[0].message.content or "").strip()
            except (openai_mod.RateLimitError, openai_mod.APIConnectionError) as e:
                logger.warning("OpenAI retry %d: %s", attempt + 1, e)
                if attempt == self.max_retries - 1:
                    raise
                await asyncio.sleep(2 ** attempt)
        return ""


def build_model_client(api_key: Optional[str], model: str, max_retries: int = 3) -> Optional[ModelClient]:
    if not api_key:
        logger.warning("OPENAI_API_KEY not set. AI features will use fallback responses.")
        return None
    return OpenAIModelClient(api_key=api_key, model=model, max_retries=max_retries)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------
def truncate_text(text: str, max_chars: int = 3000) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def parse_structured_or_fallback(raw_text: Optional[str], fallback: Callable[[str], T],
                                 build: Callable[[Any], T], array: bool = False) -> T:
    """Pull the first JSON object (or array) out of free-text model output.

    ``build`` converts the decoded JSON into the call site's result. When
    there is no JSON, it does not decode, or ``build`` rejects it,
    ``fallback`` gets the raw text instead.
    """
    text = raw_text or ""
    match = (_ARRAY_RE if array else _OBJECT_RE).search(text)
    if match:
        try:
            return build(json.loads(match.group(0)))
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning("Unparseable model output (%s): %s", e, truncate_text(text, 200))
    return fallback(text)


def scan_keywords(text: str, rules: Iterable[Tuple[str, T]], default: T) -> T:
    """Return the value of the first rule whose keyword appears in ``text``."""
    lowered = (text or "").lower()
    for keyword, value in rules:
        if keyword in lowered:
            return value
    return default


def clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = default
    if number != number:  # NaN
        number = default
    return min(high, max(low, number))


def split_tags(text: str, limit: int = 5) -> List[str]:
    tags = [t.strip().strip('"\'.#').lower() for t in (text or "").replace("\n", ",").split(",")]
    return [t for t in tags if 0 < len(t) < 30][:limit]
