from __future__ import annotations

import asyncio
import base64
import logging
import os
from typing import Awaitable, Callable, List, Optional, Sequence
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

ImageGenerator = Callable[[str], Awaitable[Optional[str]]]

POLLINATIONS_BASE_URL = os.getenv("POLLINATIONS_BASE_URL", "https://image.pollinations.ai/prompt")
IMAGEN_MODEL = os.getenv("IMAGEN_MODEL", "imagen-4.0-generate-001")

_STYLE = (
    "Modern professional business illustration: {prompt}. Style: minimalist, clean corporate design, "
    "dark theme with cyan and blue accents. Elements: data charts, abstract growth concepts. "
    "High resolution digital art suitable for executive presentations."
)


def business_image_prompt(message: str) -> str:
    return _STYLE.format(prompt=" ".join((message or "").split())[:500])


class PollinationsImageGenerator:
    """Image URL rendered on first access; no API key and no request here."""

    def __init__(self, *, width: int = 1024, height: int = 1024, model: str = "flux"):
        self.width = width
        self.height = height
        self.model = model

    async def __call__(self, message: str) -> Optional[str]:
        prompt = business_image_prompt(message)
        url = httpx.URL(
            f"{POLLINATIONS_BASE_URL.rstrip('/')}/{quote(prompt, safe='')}",
            params={"width": self.width, "height": self.height, "nologo": "true", "model": self.model},
        )
        return str(url)


class GeminiImageGenerator:
    """Imagen through the google-genai SDK; returns a data URL."""

    def __init__(self, *, project_id: str, location: str, model: str = IMAGEN_MODEL):
        from google import genai

        self.model = model
        self._client = genai.Client(vertexai=True, project=project_id, location=location)

    def _sync_generate(self, prompt: str) -> Optional[str]:
        from google.genai import types

        resp = self._client.models.generate_images(
            model=self.model,
            prompt=prompt,
            config=types.GenerateImagesConfig(number_of_images=1),
        )
        images = getattr(resp, "generated_images", None) or []
        image = getattr(images[0], "image", None) if images else None
        data = getattr(image, "image_bytes", None)
        if not data:
            return None
        mime = getattr(image, "mime_type", None) or "image/png"
        return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"

    async def __call__(self, message: str) -> Optional[str]:
        return await asyncio.to_thread(self._sync_generate, business_image_prompt(message))


class FallbackImageGenerator:
    """First provider that returns a URL wins; provider errors are logged and skipped."""

    def __init__(self, providers: Sequence[ImageGenerator]):
        self.providers = list(providers)

    async def __call__(self, message: str) -> Optional[str]:
        for provider in self.providers:
            name = type(provider).__name__
            try:
                url = await provider(message)
            except Exception as exc:
                logger.warning("image.provider_failed provider=%s err=%s", name, type(exc).__name__)
                continue
            if url:
                logger.info("image.generated provider=%s", name)
                return url
        logger.warning("image.all_providers_failed providers=%s", len(self.providers))
        return None


def build_image_generator() -> ImageGenerator:
    """IMAGE_GEN_PROVIDER=gemini puts Imagen first; Pollinations is always the fallback."""
    providers: List[ImageGenerator] = []
    if (os.getenv("IMAGE_GEN_PROVIDER") or "").strip().lower() == "gemini":
        project_id = (os.getenv("GCP_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT") or "").strip()
        if project_id:
            location = (os.getenv("GCP_LOCATION") or "us-central1").strip()
            providers.append(GeminiImageGenerator(project_id=project_id, location=location))
        else:
            logger.warning("image.gemini_disabled reason=missing_project")
    providers.append(PollinationsImageGenerator())
    return FallbackImageGenerator(providers)
