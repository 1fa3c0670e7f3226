"""
Text generation client — short marketing copy for a product.

Talks to a Gemini-compatible ``models/{model}:generateContent`` endpoint.
Stateless: one HTTP request per description.
"""

import logging

import httpx

from ..config import Settings
from ..errors import ExternalServiceError

logger = logging.getLogger(__name__)

PLACEHOLDER_DESCRIPTION = "A great product from a local store."

PROMPT = (
    'Write a short, appealing marketing description (at most 30 words) for a product '
    'named "{name}" in the "{category}" category. It is sold through a local delivery app.'
)


class TextGenerator:
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = settings.textgen_url.rstrip("/")
        self.model = settings.textgen_model
        self.api_key = settings.textgen_api_key
        self.timeout = settings.http_timeout
        self._transport = transport

    async def describe(self, name: str, category: str) -> str:
        """
        Return a marketing blurb for (name, category).

        Without an API key the placeholder text is returned and no request is
        made; a failed request raises ExternalServiceError.
        """
        if not self.api_key:
            return PLACEHOLDER_DESCRIPTION

        payload = {
            "contents": [{"parts": [{"text": PROMPT.format(name=name, category=category)}]}],
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                resp = await client.post(
                    f"{self.base_url}/models/{self.model}:generateContent",
                    params={"key": self.api_key},
                    json=payload,
                )
                resp.raise_for_status()
            except httpx.HTTPError as e:
                logger.error("Text generation failed for %r: %s", name, e)
                raise ExternalServiceError("text generation is unavailable") from e

        try:
            text = resp.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError, ValueError):
            logger.warning("Unexpected text generation response: %s", resp.text[:200])
            return PLACEHOLDER_DESCRIPTION
        return text.strip() or PLACEHOLDER_DESCRIPTION
