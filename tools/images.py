"""
FANTASY EXCHANGE: Image generation (Gemini)

Company logos, big-news illustrations and soul portraits. Everything here is
best-effort: a missing key or a failed call returns None and the caller ships
the state without the image. Images are returned as data URLs, so no blob
storage is needed.
"""

import base64
import logging
import os
from typing import Optional

from google import genai

from config.settings import LLMConfig

logger = logging.getLogger("fantasyx.images")

_client = None


def get_genai_client():
    global _client
    if _client is None:
        _client = genai.Client(api_key=os.getenv("GEMINI_API_KEY"))
    return _client


def _inline_image(response) -> Optional[tuple[bytes, str]]:
    """First inline image part of a generate_content response."""
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            inline = getattr(part, "inline_data", None)
            if inline is not None and getattr(inline, "data", None):
                data = inline.data
                if isinstance(data, str):
                    data = base64.b64decode(data)
                return data, inline.mime_type or "image/png"
    return None


def generate_image(prompt: str, purpose: str = "image") -> Optional[str]:
    """Generate one image and return it as a data URL, or None."""
    if not LLMConfig.has_gemini_key() or not prompt:
        return None
    try:
        response = get_genai_client().models.generate_content(
            model=LLMConfig.IMAGE_MODEL,
            contents=prompt,
        )
    except Exception as e:
        logger.warning(f"Gemini {purpose} generation failed: {e}")
        return None

    found = _inline_image(response)
    if found is None:
        logger.warning(f"Gemini {purpose} response had no inline image")
        return None
    data, mime = found
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def generate_company_logo(name: str, logo_prompt: str) -> Optional[str]:
    prompt = (
        f"Square fantasy stock-exchange logo emblem for '{name}'. {logo_prompt}. "
        "Bold flat iconography, centered, plain dark background. No text, no letters, no watermark."
    )
    return generate_image(prompt, purpose="logo")


def generate_news_image(image_prompt: str) -> Optional[str]:
    prompt = (
        f"Widescreen illustrated fantasy newspaper scene: {image_prompt}. "
        "Painterly, dramatic lighting. No text, no captions, no watermark."
    )
    return generate_image(prompt, purpose="news")


def generate_portrait(name: str, age: int, occupation: str, cause_of_death: str) -> Optional[str]:
    prompt = (
        f"Head-and-shoulders portrait of {name}, age {age}, a {occupation}, recently deceased "
        f"({cause_of_death}), standing before the pearly gates. Soft ethereal light, "
        "painted style, neutral expression. No text, no watermark."
    )
    return generate_image(prompt, purpose="portrait")
