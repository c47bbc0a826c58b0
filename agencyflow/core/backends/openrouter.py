"""
OpenRouter chat completions: Nano Banana image generation and captioning.
"""

import logging
from typing import Any, Dict, List, Optional

from ..context import RunContext
from ..exceptions import BackendError
from ..retry import CHAT_RETRY_CONFIG, retry_with_backoff
from .base import ImageBackend, ImageRequest, raise_for_backend_status, require_api_key

logger = logging.getLogger(__name__)

OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
CHAT_MODEL = "deepseek/deepseek-chat-v3-0324:free"
NANO_BANANA_MODEL = "google/gemini-3-pro-image-preview"

CAPTION_SYSTEM_PROMPT = (
    "You are an AI assistant for a creative agency. Help with image captioning, "
    "content descriptions, and creative writing. Be concise and professional."
)

# Pause between consecutive image requests of one node
NANO_BANANA_REQUEST_GAP = 1.0


def extract_message_image(message: Optional[Dict[str, Any]]) -> Optional[str]:
    """Pull the first image out of a chat completion message, in either layout."""
    if not message:
        return None

    images = message.get("images") or []
    if images:
        first = images[0]
        url = (first.get("image_url") or {}).get("url") or first.get("url")
        if url:
            return url

    content = message.get("content")
    if isinstance(content, list):
        for part in content:
            inline = part.get("inline_data") or {}
            if inline.get("data"):
                mime_type = inline.get("mime_type") or "image/png"
                return f"data:{mime_type};base64,{inline['data']}"
            if part.get("type") == "image_url" and (part.get("image_url") or {}).get("url"):
                return part["image_url"]["url"]

    return None


class OpenRouterChat:
    """Thin chat-completions client with retry."""

    def __init__(self, services):
        self.services = services

    def _headers(self) -> Dict[str, str]:
        api_key = require_api_key(self.services.settings.openrouter_api_key, "OpenRouter")
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.services.settings.app_url,
            "X-Title": "AgencyFlow",
        }

    async def complete(self, body: Dict[str, Any], description: str = "openrouter chat") -> Dict[str, Any]:
        headers = self._headers()
        client = self.services.http_client
        response = await retry_with_backoff(
            lambda: client.post(OPENROUTER_API_URL, json=body, headers=headers, timeout=120.0),
            CHAT_RETRY_CONFIG,
            description=description,
            sleep=self.services.sleep,
        )
        raise_for_backend_status(response, "OpenRouter")
        return response.json()

    async def caption(self, media: str, instruction: str, tone: str, max_length: int) -> str:
        user_message = f"{instruction}\n\nTone: {tone}\nMax length: {max_length} characters."
        result = await self.complete(
            {
                "model": CHAT_MODEL,
                "messages": [
                    {"role": "system", "content": CAPTION_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "image_url", "image_url": {"url": media}},
                            {"type": "text", "text": user_message},
                        ],
                    },
                ],
            },
            description="openrouter caption",
        )

        choices = result.get("choices") or [{}]
        text = (choices[0].get("message") or {}).get("content")
        if not text:
            raise BackendError("No response from AI model", backend="openrouter", retry_allowed=False)
        return text


class NanoBananaBackend(ImageBackend):
    name = "nanoBanana"

    async def generate(self, request: ImageRequest, ctx: RunContext) -> List[str]:
        chat = OpenRouterChat(self.services)

        if request.reference_image:
            content: Any = [
                {"type": "image_url", "image_url": {"url": request.reference_image}},
                {"type": "text", "text": f"Use these as reference. {request.prompt}"},
            ]
        else:
            content = request.prompt

        images: List[str] = []
        for i in range(request.count):
            result = await chat.complete(
                {
                    "model": NANO_BANANA_MODEL,
                    "messages": [{"role": "user", "content": content}],
                    "modalities": ["image", "text"],
                    "image_config": {"aspect_ratio": request.aspect_ratio},
                },
                description="openrouter nano banana",
            )
            choices = result.get("choices") or [{}]
            image = extract_message_image(choices[0].get("message"))
            if image:
                images.append(image)
            else:
                logger.warning(f"Nano Banana response {i + 1}/{request.count} contained no image")

            if i < request.count - 1:
                await self.services.sleep(NANO_BANANA_REQUEST_GAP)

        if not images:
            raise BackendError("No images generated by Nano Banana", backend=self.name, retry_allowed=False)
        return images
