"""fal.ai queue API: submit, poll the request status, then fetch the result."""

import logging
from typing import Any

from .base import GenerationRequest, PollResult, PollState, ProviderHandle
from .http import VendorClient

logger = logging.getLogger(__name__)


class FalQueueStrategy:
    def __init__(self, client: VendorClient, queue_base: str, model: str, video: bool = False):
        self._client = client
        self._base = queue_base.rstrip("/")
        self._video = video
        self.name = f"fal:{model}"
        self.params: dict[str, Any] = {"model": model}

    @property
    def _model_url(self) -> str:
        return f"{self._base}/{self.params['model']}"

    def generate(self, request: GenerationRequest) -> ProviderHandle:
        payload = {"prompt": request.prompt}
        if self._video:
            payload["video_url"] = request.source_url
        else:
            payload.update({
                "image_url": request.source_url,
                "negative_prompt": request.negative_prompt,
                "strength": request.strength,
                "num_inference_steps": request.steps,
                "guidance_scale": request.guidance,
                "image_size": {"width": request.width, "height": request.height},
            })
            if request.seed is not None:
                payload["seed"] = request.seed

        body = self._client.post_json(self._model_url, payload)
        request_id = body.get("request_id")
        if not request_id:
            raise RuntimeError(f"{self.name}: queue submit returned no request_id")
        return ProviderHandle(
            strategy=self.name,
            params={"strength": request.strength, "guidance": request.guidance, "steps": request.steps},
            provider_job_id=request_id,
        )

    def poll(self, provider_job_id: str) -> PollResult:
        status = self._client.get_json(f"{self._model_url}/requests/{provider_job_id}/status")
        state = str(status.get("status", "")).upper()

        if state in ("IN_QUEUE", "IN_PROGRESS"):
            return PollResult(PollState.RUNNING)
        if state != "COMPLETED":
            return PollResult(PollState.FAILED, error=f"{self.name} status {state or 'unknown'}")
        if status.get("error"):
            return PollResult(PollState.FAILED, error=str(status["error"]))

        result = self._client.get_json(f"{self._model_url}/requests/{provider_job_id}")
        url = None
        if isinstance(result.get("video"), dict):
            url = result["video"].get("url")
        images = result.get("images")
        if not url and isinstance(images, list) and images:
            url = images[0].get("url")
        if not url:
            return PollResult(PollState.FAILED, error=f"{self.name} completed without an output URL")
        return PollResult(PollState.SUCCEEDED, result_url=url)
