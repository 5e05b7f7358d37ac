"""Image generation through the OpenAI images endpoint."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional, Protocol

import requests

from .config import DEFAULT_IMAGES_URL

logger = logging.getLogger(__name__)


class ImageGenerationError(RuntimeError):
    """Raised when no image could be generated."""


@dataclass
class ImageResult:
    url: str
    prompt: str
    revised_prompt: Optional[str] = None


class ImageGenerator(Protocol):
    """Interface for text-to-image providers."""

    def generate(self, prompt: str) -> ImageResult:
        """Return a reference to one generated image."""


def generate_image(
    prompt: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    size: str = "1024x1024",
    url: Optional[str] = None,
    timeout: float = 120,
) -> ImageResult:
    """Ask the images endpoint for a single picture of ``prompt`` and return its URL."""

    endpoint = url or os.getenv("OPENAI_IMAGES_URL", DEFAULT_IMAGES_URL)
    token = api_key or os.getenv("OPENAI_API_KEY", "")

    payload = {
        "prompt": prompt,
        "n": 1,
        "size": size,
    }
    if model:
        payload["model"] = model

    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {token}",
    }

    try:
        response = requests.post(endpoint, json=payload, headers=headers, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.exception("Image generation request to %s failed", endpoint)
        raise ImageGenerationError(f"Image generation request failed: {exc}") from exc

    try:
        data = response.json()
    except ValueError as exc:
        raise ImageGenerationError("Image service returned invalid JSON") from exc

    images = data.get("data") if isinstance(data, dict) else None
    if not images:
        raise ImageGenerationError("Image generation failed")

    first = images[0] or {}
    image_url = first.get("url")
    if not image_url:
        raise ImageGenerationError("Image generation failed: no URL in response")

    return ImageResult(url=image_url, prompt=prompt, revised_prompt=first.get("revised_prompt"))


class OpenAIImageGenerator:
    """Binds endpoint settings to ``generate_image``."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        size: str = "1024x1024",
        url: Optional[str] = None,
        timeout: float = 120,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.size = size
        self.url = url
        self.timeout = timeout

    def generate(self, prompt: str) -> ImageResult:
        return generate_image(
            prompt,
            api_key=self.api_key,
            model=self.model,
            size=self.size,
            url=self.url,
            timeout=self.timeout,
        )
