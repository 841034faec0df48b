"""
AIML API strategies.

  - images/generations answers synchronously with the finished image.
  - video-to-video answers with either a result_url or a job id to poll.
"""

import logging
from typing import Any, Optional

from .base import GenerationRequest, PollResult, PollState, ProviderHandle
from .http import VendorClient

logger = logging.getLogger(__name__)

SUCCESS_STATES = {"succeeded", "completed", "success"}
FAILURE_STATES = {"failed", "canceled", "cancelled", "error"}


def _first_url(body: dict) -> Optional[str]:
    for key in ("images", "data", "output"):
        items = body.get(key)
        if isinstance(items, list) and items and isinstance(items[0], dict):
            url = items[0].get("url")
            if url:
                return url
    return body.get("url") or body.get("result_url")


class AimlImageStrategy:
    def __init__(self, client: VendorClient, base_url: str, model: str, name: Optional[str] = None):
        self._client = client
        self._url = f"{base_url.rstrip('/')}/images/generations"
        self.name = name or f"aiml:{model}"
        self.params: dict[str, Any] = {"model": model}

    def generate(self, request: GenerationRequest) -> ProviderHandle:
        payload = {
            "model": self.params["model"],
            "prompt": request.prompt,
            "negative_prompt": request.negative_prompt,
            "image_url": request.source_url,
            "strength": request.strength,
            "num_inference_steps": request.steps,
            "guidance_scale": request.guidance,
        }
        if request.seed is not None:
            payload["seed"] = request.seed

        body = self._client.post_json(self._url, payload)
        image_url = _first_url(body)
        if not image_url:
            raise RuntimeError(f"{self.name}: no image URL in response")
        return ProviderHandle(
            strategy=self.name,
            params={"strength": request.strength, "steps": request.steps, "guidance": request.guidance},
            result_url=image_url,
        )

    def poll(self, provider_job_id: str) -> PollResult:
        raise RuntimeError(f"{self.name} is synchronous; nothing to poll for {provider_job_id}")


class AimlVideoStrategy:
    def __init__(self, client: VendorClient, base_url: str, model: str = "flux/dev/video-to-video",
                 strength: float = 0.85, steps: int = 36, guidance: float = 7.5):
        self._client = client
        self._url = f"{base_url.rstrip('/')}/video-to-video"
        self.name = f"aiml:{model}"
        self.params: dict[str, Any] = {
            "model": model,
            "strength": strength,
            "steps": steps,
            "guidance": guidance,
        }

    def generate(self, request: GenerationRequest) -> ProviderHandle:
        payload = {
            "model": self.params["model"],
            "prompt": request.prompt or "stylize",
            "video_url": request.source_url,
            "strength": self.params["strength"],
            "num_inference_steps": self.params["steps"],
            "guidance_scale": self.params["guidance"],
        }
        body = self._client.post_json(self._url, payload)
        result_url = body.get("result_url")
        job_id = body.get("job_id") or body.get("id")
        if not result_url and not job_id:
            raise RuntimeError(f"{self.name}: response had neither result_url nor job id")
        return ProviderHandle(strategy=self.name, result_url=result_url, provider_job_id=job_id)

    def poll(self, provider_job_id: str) -> PollResult:
        body = self._client.get_json(f"{self._url}/{provider_job_id}")
        state = str(body.get("status") or body.get("state") or "").lower()
        result_url = body.get("result_url") or body.get("outputUrl")

        if state in SUCCESS_STATES and result_url:
            return PollResult(PollState.SUCCEEDED, result_url=result_url)
        if state in FAILURE_STATES:
            return PollResult(PollState.FAILED, error=f"Provider job {state}: {body.get('error') or ''}".strip())
        return PollResult(PollState.RUNNING)
