"""HTTP clients for the image generation, ball detection and speech APIs."""

from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from .errors import ServiceError
from .models import BoundingBox

logger = logging.getLogger(__name__)

FAL_URL = "https://fal.run/fal-ai/nano-banana"
GEMINI_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "gemini-2.0-flash-exp:generateContent"
)
ELEVENLABS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"
BELLA_VOICE_ID = "EXAVITQu4vr4xnSDxMaL"
SPEECH_MODEL_ID = "eleven_monolingual_v1"

DEFAULT_VOICE_SETTINGS: Dict[str, Any] = {
    "stability": 0.6,
    "similarity_boost": 0.8,
    "style": 0.4,
    "use_speaker_boost": True,
}

IMAGE_PROMPT = """A highly detailed "Where's Waldo" style cartoon illustration with MAXIMUM detail and complexity. The scene is an extremely crowded and bustling Singaporean hawker centre with hundreds of tiny cartoon characters. Include:

- VERY SMALL cartoon-style people (each person should be tiny, around 20-30 pixels tall in the final image)
- Hundreds of individual characters doing different activities
- EXACTLY ONE small red ball cleverly hidden among the chaos - visible but not obvious, blending naturally into the busy scene
- Dozens of food stalls with intricate details - hanging signs, cooking equipment, food displays
- Multiple layers of depth - people in foreground, middle ground, and background
- Complex overlapping elements - tables, chairs, food carts, decorations, signs
- Dense crowds with people standing, sitting, eating, cooking, talking, walking
- Intricate Singaporean hawker centre details - lanterns, umbrellas, menus, drinks, condiments
- Rich colors and textures throughout every inch of the scene
- Maximum visual complexity - every corner should be packed with interesting details to examine

CRITICAL REQUIREMENTS:
1. There must be ONLY ONE red ball in the entire image - no duplicates
2. The red ball should be small and naturally hidden among objects or people, but still fully visible when zoomed in
3. Characters must be VERY SMALL to create the classic "Where's Waldo" search experience
4. The scene must be EXTREMELY CROWDED and detailed - imagine 200+ individual elements
5. Style: Ultra-detailed classic "Where's Waldo" illustration where finding anything requires careful searching and zooming."""

LOCATOR_PROMPT = """You are analyzing a "Where's Waldo" style illustration. Your task is to locate the SINGLE red ball in this image.

Return ONLY a JSON object with the bounding box coordinates as percentages (0.0 to 1.0) of the image dimensions:
{
  "x_min": <left edge as percentage>,
  "y_min": <top edge as percentage>,
  "x_max": <right edge as percentage>,
  "y_max": <bottom edge as percentage>
}

IMPORTANT:
- Make the bounding box slightly larger than the ball itself (about 20% of image width/height) to be forgiving
- x_min is the left edge, x_max is the right edge
- y_min is the top edge, y_max is the bottom edge
- Return ONLY valid JSON, no other text"""

IMAGE_SIZE = "square_hd"
INFERENCE_STEPS = 28

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass
class GenerationResult:
    success: bool
    image_url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    timings: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class DetectionResult:
    success: bool
    bounding_box: Optional[BoundingBox] = None
    error: Optional[str] = None


class _HttpService:
    name = "service"

    def __init__(
        self,
        api_key: Optional[str],
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _require_key(self, variable: str) -> str:
        if not self.api_key:
            raise ServiceError(f"{variable} not configured")
        return self.api_key

    async def _post(self, client: httpx.AsyncClient, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await client.post(url, **kwargs)
        except httpx.HTTPError as exc:
            raise ServiceError(f"{self.name} request failed: {exc}") from exc
        if response.is_error:
            logger.error("%s API error: %s %s", self.name, response.status_code, response.text)
            raise ServiceError(
                f"{self.name} API error: {response.status_code}",
                status=response.status_code,
            )
        return response


class ImageGenerator(_HttpService):
    """Generates the search scene with fal.ai."""

    name = "Fal.ai"

    def __init__(self, api_key: Optional[str], url: str = FAL_URL, **kwargs: Any) -> None:
        super().__init__(api_key, **kwargs)
        self.url = url

    async def generate(
        self,
        prompt: str = IMAGE_PROMPT,
        image_size: str = IMAGE_SIZE,
        num_inference_steps: int = INFERENCE_STEPS,
    ) -> GenerationResult:
        if not prompt:
            raise ServiceError("Prompt is required", status=400)
        key = self._require_key("FAL_KEY")
        async with self._client() as client:
            response = await self._post(
                client,
                self.url,
                headers={"Authorization": f"Key {key}"},
                json={
                    "prompt": prompt,
                    "image_size": image_size,
                    "num_inference_steps": num_inference_steps,
                },
            )
        try:
            payload = response.json()
        except ValueError:
            return GenerationResult(success=False, error="Invalid JSON from image API")

        if not isinstance(payload, dict):
            return GenerationResult(success=False, error="Unexpected response from image API")
        images = payload.get("images") or []
        first = images[0] if isinstance(images, list) and images else None
        if not isinstance(first, dict) or not isinstance(first.get("url"), str) or not first["url"]:
            return GenerationResult(success=False, error="No images generated")
        return GenerationResult(
            success=True,
            image_url=first["url"],
            width=first.get("width"),
            height=first.get("height"),
            timings=payload.get("timings") or {},
        )


class BallLocator(_HttpService):
    """Asks Gemini vision where the red ball is."""

    name = "Gemini"

    def __init__(self, api_key: Optional[str], url: str = GEMINI_URL, **kwargs: Any) -> None:
        super().__init__(api_key, **kwargs)
        self.url = url

    async def locate(self, image_url: str) -> DetectionResult:
        if not image_url:
            raise ServiceError("Image URL is required", status=400)
        key = self._require_key("GEMINI_API_KEY")
        async with self._client() as client:
            try:
                image = await client.get(image_url)
            except httpx.HTTPError as exc:
                raise ServiceError(f"Failed to download image: {exc}") from exc
            if image.is_error:
                raise ServiceError("Failed to download image", status=400)

            encoded = base64.b64encode(image.content).decode("ascii")
            response = await self._post(
                client,
                self.url,
                params={"key": key},
                json={
                    "contents": [
                        {
                            "role": "user",
                            "parts": [
                                {"text": LOCATOR_PROMPT},
                                {"inlineData": {"mimeType": "image/jpeg", "data": encoded}},
                            ],
                        }
                    ]
                },
            )
        return parse_locator_reply(response)


def parse_locator_reply(response: httpx.Response) -> DetectionResult:
    try:
        payload = response.json()
        text = payload["candidates"][0]["content"]["parts"][0]["text"]
    except (ValueError, KeyError, IndexError, TypeError):
        return DetectionResult(success=False, error="Invalid response from Gemini API")
    if not isinstance(text, str):
        return DetectionResult(success=False, error="Invalid response from Gemini API")

    logger.debug("Gemini vision reply: %s", text)
    match = _JSON_OBJECT.search(text)
    if not match:
        return DetectionResult(
            success=False, error="Failed to parse ball location from Gemini response"
        )
    try:
        box = BoundingBox.from_mapping(json.loads(match.group(0)))
    except ValueError:
        return DetectionResult(
            success=False, error="Failed to parse ball location from Gemini response"
        )
    logger.info("Detected ball position: %s", box)
    return DetectionResult(success=True, bounding_box=box)


class SpeechSynthesizer(_HttpService):
    """Text-to-speech through ElevenLabs."""

    name = "ElevenLabs"

    def __init__(
        self,
        api_key: Optional[str],
        voice_id: str = BELLA_VOICE_ID,
        url: str = ELEVENLABS_URL,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("timeout", 30.0)
        super().__init__(api_key, **kwargs)
        self.voice_id = voice_id
        self.url = url

    async def synthesize(
        self, text: str, voice_settings: Optional[Dict[str, Any]] = None
    ) -> bytes:
        if not text:
            raise ServiceError("Text is required", status=400)
        key = self._require_key("ELEVENLABS_API_KEY")
        async with self._client() as client:
            response = await self._post(
                client,
                self.url.format(voice_id=self.voice_id),
                headers={"Accept": "audio/mpeg", "xi-api-key": key},
                json={
                    "text": text,
                    "model_id": SPEECH_MODEL_ID,
                    "voice_settings": voice_settings or DEFAULT_VOICE_SETTINGS,
                },
            )
        logger.debug("Synthesized %d bytes of speech for %r", len(response.content), text)
        return response.content
