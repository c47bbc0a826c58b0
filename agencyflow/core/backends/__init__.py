"""
Generation backend adapters.

Each adapter turns a node's resolved config into a backend-specific request,
sends it through the job router (self-hosted) or the per-tenant queue and
retry wrapper (hosted APIs), and returns media references.
"""

from .base import ImageBackend, VideoBackend, ImageRequest, VideoRequest

__all__ = ["ImageBackend", "VideoBackend", "ImageRequest", "VideoRequest"]
