"""
Node executors.

One coroutine per node kind. Each receives the node's validated config, the
inputs collected from upstream outputs (keyed by input port name) and the
RunContext, and returns the node output keyed by output port name.
"""

import logging
from typing import Any, Dict

from .backends.base import ImageRequest, VideoRequest
from .backends.openrouter import OpenRouterChat
from .backends.replicate import remove_background
from .context import RunContext
from .exceptions import NodeExecutionError
from .model_registry import get_image_backend, get_video_backend

logger = logging.getLogger(__name__)

VIDEO_MARKERS = (".mp4", ".webm", "video")


def is_video_ref(media: Any) -> bool:
    return isinstance(media, str) and any(marker in media for marker in VIDEO_MARKERS)


async def execute_generate_image(config, inputs: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    logger.info(
        f"Generating {config.count} image(s) with {config.model}",
        extra={"node_id": ctx.node_id, "prompt": config.prompt[:50]},
    )
    backend = get_image_backend(config.model)(ctx.services)
    images = await backend.generate(
        ImageRequest(
            prompt=config.prompt,
            negative_prompt=config.negative_prompt,
            aspect_ratio=config.aspect_ratio,
            count=config.count,
            reference_image=inputs.get("reference_image"),
        ),
        ctx,
    )
    return {"images": images}


async def execute_generate_video(config, inputs: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    logger.info(
        f"Generating {config.duration}s video with {config.model}",
        extra={"node_id": ctx.node_id, "prompt": config.prompt[:50]},
    )
    backend = get_video_backend(config.model)(ctx.services)
    video = await backend.generate(
        VideoRequest(
            prompt=config.prompt,
            duration=config.duration,
            aspect_ratio=config.aspect_ratio,
            start_image=inputs.get("start_image"),
        ),
        ctx,
    )
    return {"video": video}


async def execute_bg_remove(config, inputs: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    image = inputs.get("image")
    if not image:
        raise NodeExecutionError("No input image provided for background removal")
    return {"image": await remove_background(ctx.services, image)}


async def execute_ai_caption(config, inputs: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    media = inputs.get("media")
    if not media:
        raise NodeExecutionError("No input media provided for captioning")

    text = await OpenRouterChat(ctx.services).caption(
        media, config.instruction, config.tone, config.max_length
    )
    return {"text": text, "media": media}


async def execute_review(config, inputs: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    return {port: inputs[port] for port in ("media", "text") if inputs.get(port) is not None}


async def execute_pick(config, inputs: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    images = inputs.get("images")
    if not images:
        raise NodeExecutionError("No images to pick from")
    return {"images": list(images)}


async def execute_save_to_gallery(config, inputs: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    media = inputs.get("media")
    if not media:
        raise NodeExecutionError("No media provided to save")

    try:
        ctx.services.gallery.save(
            agency_id=ctx.agency_id,
            media_ref=media,
            media_type="video" if is_video_ref(media) else "image",
            model_id=ctx.target_model.id if ctx.target_model else None,
            run_id=ctx.run_id,
            caption=inputs.get("caption"),
            tags=config.tags,
        )
    except Exception:
        # Gallery problems do not fail the run; the media is still in the node output
        logger.exception("Failed to save media to gallery", extra={"node_id": ctx.node_id})

    return {"media": media}


async def execute_export(config, inputs: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    logger.info(f"Export to {config.platform} requested", extra={"node_id": ctx.node_id})
    return {}
