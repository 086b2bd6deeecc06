"""
Coffee bag analysis through a vision model.

``GeminiVisionClient`` talks to Gemini through google-genai. The parsing
helpers turn the model's free text into a sanitized coffee record.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

logger = logging.getLogger(__name__)

QUERY_RESPONSE_MAX_OUTPUT_TOKENS = 1024
MAX_FIELD_LENGTH = 200

DEFAULT_MEDIA_TYPE = "image/jpeg"
ALLOWED_MEDIA_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")

ANALYSIS_PROMPT = """Analyze this coffee bag and extract the following information as JSON:
{
  "name": "coffee name or farm name",
  "origin": "country and region",
  "process": "processing method (washed, natural, honey, etc)",
  "cultivar": "variety/cultivar",
  "altitude": "altitude in masl",
  "roaster": "roaster name",
  "tastingNotes": "tasting notes"
}

Only return valid JSON, no other text."""

COFFEE_DEFAULTS = {
    "name": "Unknown",
    "origin": "Unknown",
    "process": "washed",
    "cultivar": "Unknown",
    "altitude": "1500",
    "roaster": "Unknown",
    "tastingNotes": "No notes",
}

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_OBJECT_BLOCK = re.compile(r"\{[\s\S]*\}")
_TAGS = re.compile(r"<[^>]*>")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class VisionInvalidResponseException(Exception):
    pass


class VisionProviderError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class VisionClient(Protocol):
    def describe_image(self, image_bytes: bytes, media_type: str) -> str:
        ...


@dataclass
class GeminiVisionClient:
    api_key: str
    model: str = "gemini-3-flash-preview"

    def __post_init__(self):
        self._client = genai.Client(api_key=self.api_key)

    def describe_image(self, image_bytes: bytes, media_type: str) -> str:
        """Calls Gemini with the analysis prompt and an image."""
        start_time = time.time()
        try:
            response = self._client.models.generate_content(
                model=self.model,
                contents=[
                    types.Part.from_bytes(data=image_bytes, mime_type=media_type),
                    ANALYSIS_PROMPT,
                ],
                config=types.GenerateContentConfig(
                    temperature=0, max_output_tokens=QUERY_RESPONSE_MAX_OUTPUT_TOKENS
                ),
            )
        except genai_errors.APIError as exc:
            raise VisionProviderError(str(exc), status_code=exc.code) from exc
        logger.info("Gemini image analysis took %.2fs", time.time() - start_time)
        if not response.text:
            raise VisionInvalidResponseException("Empty response from Gemini")
        return response.text


def decode_image(image_data: Optional[str]) -> bytes:
    """Decode base64 image data; raises ValueError when absent or malformed."""
    if not image_data:
        raise ValueError("Image data required")
    try:
        decoded = base64.b64decode(image_data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Image data is not valid base64") from exc
    if not decoded:
        raise ValueError("Image data is empty")
    return decoded


def extract_coffee_json(text: str) -> dict:
    """
    Pull the coffee JSON object out of a model response.

    Fenced ```json blocks win over bare text; inside the candidate the
    outermost ``{...}`` span is parsed.
    """
    combined = (text or "").strip()
    if not combined:
        raise VisionInvalidResponseException(
            "No text content returned from analysis provider"
        )
    fenced = _FENCED_BLOCK.search(combined)
    candidate = fenced.group(1) if fenced else combined
    match = _OBJECT_BLOCK.search(candidate)
    if not match:
        raise VisionInvalidResponseException("Could not parse coffee data")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise VisionInvalidResponseException("Could not parse coffee data") from exc
    if not isinstance(parsed, dict):
        raise VisionInvalidResponseException("Coffee data is not an object")
    return parsed


def build_coffee_defaults(coffee_data: Optional[dict], now: Optional[datetime] = None) -> dict:
    coffee_data = coffee_data or {}
    result = {
        key: coffee_data.get(key) or default for key, default in COFFEE_DEFAULTS.items()
    }
    result["addedDate"] = (now or datetime.now(timezone.utc)).isoformat()
    return result


def _clean_text(value) -> str:
    if not isinstance(value, str):
        value = str(value)
    value = _TAGS.sub("", value)
    value = _CONTROL_CHARS.sub(" ", value)
    value = re.sub(r"\s+", " ", value).strip()
    return value[:MAX_FIELD_LENGTH]


def sanitize_coffee_data(coffee_data: dict) -> dict:
    return {key: _clean_text(value) for key, value in coffee_data.items()}


def analyze_coffee_image(
    client: VisionClient, image_bytes: bytes, media_type: str = DEFAULT_MEDIA_TYPE
) -> dict:
    text = client.describe_image(image_bytes, media_type)
    return sanitize_coffee_data(build_coffee_defaults(extract_coffee_json(text)))
