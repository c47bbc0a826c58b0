"""
Seedream image generation through the WaveSpeed API.

Requests are serialized per agency through a PerTenantQueue (WaveSpeed rate
limits per account) and wrapped in retry_with_backoff. Sync mode is
requested; if WaveSpeed answers with a task id instead of images, the result
endpoint is polled.
"""

import logging
from typing import Any, Dict, List

from ..context import RunContext
from ..exceptions import BackendError, JobFailedError, JobTimeoutError
from ..output_normalizer import DATA_URL_PREFIX
from ..retry import retry_with_backoff
from .base import ImageBackend, ImageRequest, raise_for_backend_status, require_api_key

logger = logging.getLogger(__name__)

WAVESPEED_TEXT2IMG_URL = "https://api.wavespeed.ai/api/v3/bytedance/seedream-v4.5"
WAVESPEED_IMG2IMG_URL = "https://api.wavespeed.ai/api/v3/bytedance/seedream-v4.5/edit"
WAVESPEED_RESULT_URL = "https://api.wavespeed.ai/api/v3/predictions"

RESULT_POLL_INTERVAL = 2.0
RESULT_MAX_POLLS = 60

SEEDREAM_SIZES = {
    "1:1": "2048*2048",
    "4:3": "2048*1536",
    "3:4": "1536*2048",
    "16:9": "2048*1152",
    "9:16": "1152*2048",
    "2:3": "1365*2048",
    "3:2": "2048*1365",
}


def _output_ref(output: Any) -> str:
    if isinstance(output, str):
        return output if output.startswith("http") or output.startswith("data:") else DATA_URL_PREFIX + output
    if isinstance(output, dict):
        if output.get("url"):
            return output["url"]
        if output.get("base64"):
            return DATA_URL_PREFIX + output["base64"]
    return ""


def extract_wavespeed_images(result: Dict[str, Any]) -> List[str]:
    """Collect image references from any of WaveSpeed's response layouts."""
    data = result.get("data") if isinstance(result.get("data"), dict) else None

    if data is not None and isinstance(data.get("outputs"), list):
        outputs = data["outputs"]
    elif data is not None and (data.get("url") or data.get("base64")):
        outputs = [data]
    elif isinstance(result.get("outputs"), list):
        outputs = result["outputs"]
    elif isinstance(result.get("output"), str):
        outputs = [result["output"]]
    else:
        outputs = []

    return [ref for ref in (_output_ref(item) for item in outputs) if ref]


class SeedreamBackend(ImageBackend):
    name = "seedream"

    def _headers(self) -> Dict[str, str]:
        api_key = require_api_key(self.services.settings.wavespeed_api_key, "WaveSpeed")
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    def build_request(self, request: ImageRequest) -> Dict[str, Any]:
        size = SEEDREAM_SIZES.get(request.aspect_ratio, SEEDREAM_SIZES["1:1"])

        prompt = request.prompt
        if request.negative_prompt:
            prompt += f" Avoid: {request.negative_prompt}"

        if request.reference_image:
            return {
                "url": WAVESPEED_IMG2IMG_URL,
                "body": {
                    "prompt": f"Use these reference images as style guide. {prompt}",
                    "images": [request.reference_image],
                    "size": size,
                    "enable_base64_output": True,
                    "enable_sync_mode": True,
                },
            }
        return {
            "url": WAVESPEED_TEXT2IMG_URL,
            "body": {
                "prompt": prompt,
                "size": size,
                "n": min(request.count, 4),
                "enable_base64_output": True,
                "enable_sync_mode": True,
            },
        }

    async def generate(self, request: ImageRequest, ctx: RunContext) -> List[str]:
        headers = self._headers()
        prepared = self.build_request(request)
        client = self.services.http_client

        response = await self.services.wavespeed_queue.submit(
            ctx.agency_id,
            lambda: retry_with_backoff(
                lambda: client.post(prepared["url"], json=prepared["body"], headers=headers, timeout=120.0),
                description="wavespeed seedream",
                sleep=self.services.sleep,
            ),
        )
        raise_for_backend_status(response, "WaveSpeed")

        result = response.json()
        images = extract_wavespeed_images(result)

        if not images and result.get("id") and not result.get("data"):
            logger.info(f"WaveSpeed answered async, polling task {result['id']}")
            images = extract_wavespeed_images(await self._poll_result(result["id"], headers))

        if not images:
            raise BackendError("No images generated by Seedream", backend=self.name, retry_allowed=False)

        return images

    async def _poll_result(self, task_id: str, headers: Dict[str, str]) -> Dict[str, Any]:
        url = f"{WAVESPEED_RESULT_URL}/{task_id}/result"

        for _ in range(RESULT_MAX_POLLS):
            await self.services.sleep(RESULT_POLL_INTERVAL)

            response = await self.services.http_client.get(url, headers=headers, timeout=30.0)
            raise_for_backend_status(response, "WaveSpeed")
            result = response.json()

            status = result.get("status") or (result.get("data") or {}).get("status")
            if status in ("completed", "succeeded"):
                return result
            if status in ("failed", "error"):
                raise JobFailedError(
                    f"Seedream generation failed: {result.get('error') or 'unknown error'}",
                    job_id=task_id,
                    backend=self.name,
                )
            if extract_wavespeed_images(result):
                return result

        raise JobTimeoutError("WaveSpeed generation timed out", job_id=task_id,
                              attempts=RESULT_MAX_POLLS, backend=self.name)
