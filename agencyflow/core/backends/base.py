"""
Base classes for generation backends.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, TYPE_CHECKING

import httpx

from ..exceptions import BackendError

if TYPE_CHECKING:
    from ..context import RunContext
    from ..services import EngineServices


@dataclass
class ImageRequest:
    prompt: str = ""
    negative_prompt: str = ""
    aspect_ratio: str = "1:1"
    count: int = 1
    reference_image: Optional[str] = None


@dataclass
class VideoRequest:
    prompt: str = ""
    duration: int = 5
    aspect_ratio: str = "16:9"
    start_image: Optional[str] = None


class ImageBackend(ABC):
    """Produces one or more images for a generate_image node."""

    name: str = "image"

    def __init__(self, services: "EngineServices"):
        self.services = services

    @abstractmethod
    async def generate(self, request: ImageRequest, ctx: "RunContext") -> List[str]:
        """Return image references (data URLs or https URLs)."""
        pass


class VideoBackend(ABC):
    """Produces one video for a generate_video node."""

    name: str = "video"

    def __init__(self, services: "EngineServices"):
        self.services = services

    @abstractmethod
    async def generate(self, request: VideoRequest, ctx: "RunContext") -> str:
        """Return the video URL."""
        pass


def require_api_key(value: Optional[str], label: str) -> str:
    if not value:
        raise BackendError(f"{label} API key not configured", backend=label, retry_allowed=False)
    return value


def raise_for_backend_status(response: httpx.Response, backend: str) -> None:
    """Raise BackendError carrying the response body for any non-2xx status."""
    if response.is_success:
        return
    raise BackendError(
        f"{backend} API error: {response.status_code} - {response.text[:500]}",
        backend=backend,
        retry_allowed=response.status_code >= 500,
    )
