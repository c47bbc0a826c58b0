"""
Replicate predictions: video models and background removal.

Predictions are created with "Prefer: wait" so short jobs come back in the
first response; longer ones are polled until they reach a terminal status.
"""

import logging
from typing import Any, Dict, Optional

from ..context import RunContext
from ..exceptions import BackendError, JobFailedError, JobTimeoutError
from ..retry import retry_with_backoff
from .base import VideoBackend, VideoRequest, raise_for_backend_status, require_api_key

logger = logging.getLogger(__name__)

REPLICATE_API_URL = "https://api.replicate.com/v1"

KLING_MODEL = "kwaivgi/kling-v2.5-turbo-pro"
VEO_MODEL = "google/veo-3.1-fast"
WAN_MODEL = "wan-video/wan-2.2-i2v-a14b"
BG_REMOVER_MODEL = (
    "851-labs/background-remover:"
    "a029dff38972b5fda4ec5d75d7d1cd25aeff621d2cf4946a41055d7db66b80bc"
)

PREDICTION_POLL_INTERVAL = 2.0
PREDICTION_MAX_POLLS = 300


def extract_output_url(output: Any) -> Optional[str]:
    """Replicate outputs are a URL, a list of URLs, or an object with a url."""
    if not output:
        return None
    if isinstance(output, str):
        return output
    if isinstance(output, list):
        return extract_output_url(output[0]) if output else None
    if isinstance(output, dict) and output.get("url"):
        return output["url"]
    return None


class ReplicateClient:

    def __init__(self, services):
        self.services = services

    def _headers(self) -> Dict[str, str]:
        token = require_api_key(self.services.settings.replicate_api_token, "Replicate")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Prefer": "wait",
        }

    def _create_request(self, model: str, model_input: Dict[str, Any]):
        # "owner/name:version" pins a version; "owner/name" runs the latest
        if ":" in model:
            _, version = model.split(":", 1)
            return f"{REPLICATE_API_URL}/predictions", {"version": version, "input": model_input}
        return f"{REPLICATE_API_URL}/models/{model}/predictions", {"input": model_input}

    async def run(self, model: str, model_input: Dict[str, Any]) -> Any:
        """Run a model to completion and return its raw output."""
        headers = self._headers()
        url, body = self._create_request(model, model_input)
        client = self.services.http_client

        response = await retry_with_backoff(
            lambda: client.post(url, json=body, headers=headers, timeout=120.0),
            description=f"replicate {model.split(':')[0]}",
            sleep=self.services.sleep,
        )
        raise_for_backend_status(response, "Replicate")
        prediction = response.json()

        polls = 0
        while prediction.get("status") not in ("succeeded", "failed", "canceled"):
            if polls >= PREDICTION_MAX_POLLS:
                raise JobTimeoutError(
                    f"Replicate prediction {prediction.get('id')} did not finish",
                    job_id=prediction.get("id"),
                    attempts=polls,
                    backend="replicate",
                )
            await self.services.sleep(PREDICTION_POLL_INTERVAL)
            polls += 1

            poll_url = (prediction.get("urls") or {}).get("get") or f"{REPLICATE_API_URL}/predictions/{prediction['id']}"
            poll = await client.get(poll_url, headers=headers, timeout=30.0)
            raise_for_backend_status(poll, "Replicate")
            prediction = poll.json()

        if prediction["status"] != "succeeded":
            raise JobFailedError(
                f"Replicate prediction {prediction['status']}: {prediction.get('error') or 'unknown error'}",
                job_id=prediction.get("id"),
                backend="replicate",
            )

        return prediction.get("output")

    async def run_for_url(self, model: str, model_input: Dict[str, Any]) -> str:
        output = await self.run(model, model_input)
        url = extract_output_url(output)
        if not url:
            raise BackendError(f"Replicate model {model} returned no output", backend="replicate", retry_allowed=False)
        return url


class KlingBackend(VideoBackend):
    name = "kling"

    async def generate(self, request: VideoRequest, ctx: RunContext) -> str:
        model_input = {
            "prompt": request.prompt,
            "aspect_ratio": request.aspect_ratio,
            "duration": request.duration,
            "guidance_scale": 0.5,
        }
        if request.start_image:
            model_input["start_image"] = request.start_image
        return await ReplicateClient(self.services).run_for_url(KLING_MODEL, model_input)


class VeoBackend(VideoBackend):
    name = "veo"

    async def generate(self, request: VideoRequest, ctx: RunContext) -> str:
        model_input = {
            "prompt": request.prompt,
            "aspect_ratio": request.aspect_ratio,
            "duration": request.duration,
            "resolution": "720p",
            "generate_audio": True,
        }
        if request.start_image:
            model_input["image"] = request.start_image
        return await ReplicateClient(self.services).run_for_url(VEO_MODEL, model_input)


class WanBackend(VideoBackend):
    name = "wan"

    async def generate(self, request: VideoRequest, ctx: RunContext) -> str:
        # Fixed clip length; duration and aspect ratio are not exposed by the model
        model_input = {
            "prompt": request.prompt,
            "resolution": "480p",
            "num_frames": 81,
            "frames_per_second": 16,
            "sample_steps": 30,
            "sample_shift": 5,
            "go_fast": False,
        }
        if request.start_image:
            model_input["image"] = request.start_image
        return await ReplicateClient(self.services).run_for_url(WAN_MODEL, model_input)


async def remove_background(services, image: str) -> str:
    return await ReplicateClient(services).run_for_url(BG_REMOVER_MODEL, {"image": image})
