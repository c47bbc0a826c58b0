"""
Model Registry - maps the "model" field of generation nodes to backend adapters.

Usage:
    backend_cls = get_image_backend("qwen")
    images = await backend_cls(services).generate(request, ctx)
"""

from typing import Dict, List, Type

from .backends.base import ImageBackend, VideoBackend
from .backends.comfyui import QwenImageBackend
from .backends.openrouter import NanoBananaBackend
from .backends.replicate import KlingBackend, VeoBackend, WanBackend
from .backends.wavespeed import SeedreamBackend
from .exceptions import WorkflowValidationError


_IMAGE_BACKENDS: Dict[str, Type[ImageBackend]] = {
    "seedream": SeedreamBackend,
    "nanoBanana": NanoBananaBackend,
    "qwen": QwenImageBackend,
}

_VIDEO_BACKENDS: Dict[str, Type[VideoBackend]] = {
    "kling": KlingBackend,
    "wan": WanBackend,
    "veo": VeoBackend,
}


def get_image_backend(model: str) -> Type[ImageBackend]:
    if model not in _IMAGE_BACKENDS:
        raise WorkflowValidationError(
            f"Unknown image generation model: '{model}'. "
            f"Available models: {', '.join(_IMAGE_BACKENDS)}"
        )
    return _IMAGE_BACKENDS[model]


def get_video_backend(model: str) -> Type[VideoBackend]:
    if model not in _VIDEO_BACKENDS:
        raise WorkflowValidationError(
            f"Unknown video generation model: '{model}'. "
            f"Available models: {', '.join(_VIDEO_BACKENDS)}"
        )
    return _VIDEO_BACKENDS[model]


def list_image_models() -> List[str]:
    return list(_IMAGE_BACKENDS)


def list_video_models() -> List[str]:
    return list(_VIDEO_BACKENDS)
