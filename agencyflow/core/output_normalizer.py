"""
Normalizes job-completion payloads from self-hosted workers.

ComfyUI worker images disagree on where they put the generated media. The
shapes seen in practice, in the order they are tried:

1. {"images": ["<base64 or url>", ...]}
2. {"images": [{"data": "..."}, ...]}
3. {"images": [{"image": "..."}, ...]}
4. {"image": "..."} or {"image": {"data": "..."}}
5. {"message": "<base64>"}

normalize_job_output() never raises: an unknown shape gives an empty
MediaResult and the caller decides which error to surface.
"""

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

DATA_URL_PREFIX = "data:image/png;base64,"

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")

JOB_STATUS_MAP = {
    "IN_QUEUE": "queued",
    "IN_PROGRESS": "processing",
    "COMPLETED": "completed",
    "FAILED": "failed",
    "CANCELLED": "cancelled",
    "TIMED_OUT": "failed",
}


@dataclass
class MediaResult:
    primary: Optional[str] = None
    all: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.primary is None


def ensure_data_url(value: str) -> str:
    """Wrap bare base64 in a data URL; anything with a scheme (data:, https:) is kept."""
    if _SCHEME_RE.match(value):
        return value
    return DATA_URL_PREFIX + value


def _string_items(items: List[Any]) -> List[str]:
    return [item for item in items if isinstance(item, str) and item]


def _keyed_items(items: List[Any], key: str) -> List[str]:
    values = []
    for item in items:
        if isinstance(item, dict) and isinstance(item.get(key), str) and item[key]:
            values.append(item[key])
    return values


def _from_images_array(images: List[Any]) -> List[str]:
    if not images:
        return []
    first = images[0]
    if isinstance(first, str):
        return _string_items(images)
    if isinstance(first, dict):
        if "data" in first:
            return _keyed_items(images, "data")
        if "image" in first:
            return _keyed_items(images, "image")
    return []


def _from_image_field(image: Any) -> List[str]:
    if isinstance(image, str) and image:
        return [image]
    if isinstance(image, dict):
        for key in ("data", "image"):
            if isinstance(image.get(key), str) and image[key]:
                return [image[key]]
    return []


def normalize_job_output(payload: Any) -> MediaResult:
    if not isinstance(payload, dict):
        return MediaResult()

    found: List[str] = []
    if isinstance(payload.get("images"), list):
        found = _from_images_array(payload["images"])
    if not found and "image" in payload:
        found = _from_image_field(payload["image"])
    if not found and isinstance(payload.get("message"), str) and payload["message"]:
        found = [payload["message"]]

    if not found:
        return MediaResult()

    media = [ensure_data_url(value) for value in found]
    return MediaResult(primary=media[0], all=media)


def map_job_status(status: Optional[str]) -> str:
    if not status:
        return "unknown"
    return JOB_STATUS_MAP.get(status, status.lower())
