"""
Qwen image generation on self-hosted ComfyUI workers.

Jobs go through the ComputeJobRouter. The target model's LoRA is injected
automatically: its file goes into the first Power Lora Loader slot and its
trigger word is prepended to the prompt, so workflow authors never configure
LoRAs by hand.
"""

import logging
import random
from typing import Any, Dict, List, Optional

from ..context import ModelContext, RunContext
from .base import ImageBackend, ImageRequest

logger = logging.getLogger(__name__)

# ComfyUI needs exact pixel sizes
QWEN_DIMENSIONS = {
    "1:1": (1536, 1536),
    "4:3": (1536, 1152),
    "3:4": (1152, 1536),
    "16:9": (1536, 864),
    "9:16": (864, 1536),
    "2:3": (1024, 1536),
    "3:2": (1536, 1024),
}

MAX_SEED = 999_999_999_999_999


def _lora_slot(model: Optional[ModelContext]) -> Dict[str, Any]:
    if model is not None and model.lora_path:
        return {"on": True, "lora": model.lora_path, "strength": model.lora_weight}
    return {"on": False, "lora": "None", "strength": 1}


def build_qwen_workflow(
    prompt: str,
    negative_prompt: str = "",
    width: int = 1152,
    height: int = 1536,
    seed: Optional[int] = None,
    model: Optional[ModelContext] = None,
) -> Dict[str, Dict[str, Any]]:
    """ComfyUI API-format prompt graph for Qwen-Image with the lightning LoRA (4 steps)."""
    if seed is None:
        seed = random.randint(0, MAX_SEED)

    return {
        "3": {
            "inputs": {
                "seed": seed,
                "steps": 4,
                "cfg": 1,
                "sampler_name": "euler",
                "scheduler": "simple",
                "denoise": 1,
                "model": ["66", 0],
                "positive": ["6", 0],
                "negative": ["7", 0],
                "latent_image": ["58", 0],
            },
            "class_type": "KSampler",
        },
        "6": {
            "inputs": {"text": prompt, "clip": ["38", 0]},
            "class_type": "CLIPTextEncode",
        },
        "7": {
            "inputs": {"text": negative_prompt, "clip": ["38", 0]},
            "class_type": "CLIPTextEncode",
        },
        "8": {
            "inputs": {"samples": ["3", 0], "vae": ["39", 0]},
            "class_type": "VAEDecode",
        },
        "37": {
            "inputs": {"unet_name": "qwen_image_bf16.safetensors", "weight_dtype": "default"},
            "class_type": "UNETLoader",
        },
        "38": {
            "inputs": {
                "clip_name": "qwen_2.5_vl_7b_fp8_scaled.safetensors",
                "type": "qwen_image",
                "device": "default",
            },
            "class_type": "CLIPLoader",
        },
        "39": {
            "inputs": {"vae_name": "qwen_image_vae.safetensors"},
            "class_type": "VAELoader",
        },
        "58": {
            "inputs": {"width": width, "height": height, "batch_size": 1},
            "class_type": "EmptySD3LatentImage",
        },
        "60": {
            "inputs": {
                "filename_prefix": "txt2img/%date:yyyy-MM-dd%/%date:yyyy-MM-dd%",
                "images": ["8", 0],
            },
            "class_type": "SaveImage",
        },
        "66": {
            "inputs": {"shift": 2, "model": ["76", 0]},
            "class_type": "ModelSamplingAuraFlow",
        },
        "76": {
            "inputs": {
                "PowerLoraLoaderHeaderWidget": {"type": "PowerLoraLoaderHeaderWidget"},
                "lora_1": _lora_slot(model),
                "lora_2": {"on": True, "lora": "qwen-boreal-portraits-portraits-high-rank.safetensors", "strength": 0.6},
                "lora_3": {"on": True, "lora": "Qwen-Image-Lightning-4steps-V2.0.safetensors", "strength": 1},
                "➕ Add Lora": "",
                "model": ["37", 0],
            },
            "class_type": "Power Lora Loader (rgthree)",
        },
    }


class QwenImageBackend(ImageBackend):
    name = "qwen"

    async def generate(self, request: ImageRequest, ctx: RunContext) -> List[str]:
        width, height = QWEN_DIMENSIONS.get(request.aspect_ratio, QWEN_DIMENSIONS["1:1"])

        model = ctx.target_model
        prompt = request.prompt
        if model is not None and model.lora_path and model.lora_trigger:
            prompt = f"{model.lora_trigger} {prompt}"

        logger.info(
            f"Qwen generation: {request.count} image(s) at {width}x{height}",
            extra={
                "has_lora": bool(model and model.lora_path),
                "node_id": ctx.node_id,
            },
        )

        images: List[str] = []
        # One image per ComfyUI job
        for _ in range(request.count):
            workflow = build_qwen_workflow(
                prompt,
                negative_prompt=request.negative_prompt,
                width=width,
                height=height,
                model=model,
            )
            media = await self.services.job_router.run_job({"workflow": workflow})
            images.extend(media.all)

        return images
