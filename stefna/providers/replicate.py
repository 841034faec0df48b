"""
Replicate predictions - last-resort tier.

Each fallback model carries its own strength/guidance, tuned for identity
preservation rather than style.
"""

import logging
from typing import Any

from .base import GenerationRequest, PollResult, PollState, ProviderHandle
from .http import VendorClient

logger = logging.getLogger(__name__)

REPLICATE_FALLBACK_MODELS = [
    {"model": "banian/realistic-vision-v51", "strength": 0.3, "guidance": 7.0},
    {"model": "lucataco/sdxl-img2img", "strength": 0.4, "guidance": 7.5},
    {"model": "segmind/realvisxl-v3-img2img", "strength": 0.35, "guidance": 7.0},
]


class ReplicateStrategy:
    def __init__(self, client: VendorClient, api_base: str, model: str, strength: float, guidance: float):
        self._client = client
        self._base = api_base.rstrip("/")
        self.name = f"replicate:{model}"
        self.params: dict[str, Any] = {"model": model, "strength": strength, "guidance": guidance}

    def generate(self, request: GenerationRequest) -> ProviderHandle:
        payload = {
            "input": {
                "prompt": request.prompt,
                "negative_prompt": request.negative_prompt,
                "image": request.source_url,
                "strength": self.params["strength"],
                "guidance_scale": self.params["guidance"],
                "num_inference_steps": request.steps,
            }
        }
        body = self._client.post_json(f"{self._base}/models/{self.params['model']}/predictions", payload)
        prediction_id = body.get("id")
        if not prediction_id:
            raise RuntimeError(f"{self.name}: prediction has no id")
        return ProviderHandle(strategy=self.name, provider_job_id=prediction_id)

    def poll(self, provider_job_id: str) -> PollResult:
        body = self._client.get_json(f"{self._base}/predictions/{provider_job_id}")
        status = body.get("status", "")

        if status in ("starting", "processing"):
            return PollResult(PollState.RUNNING)
        if status == "succeeded":
            output = body.get("output")
            url = output[0] if isinstance(output, list) and output else output
            if isinstance(url, str) and url:
                return PollResult(PollState.SUCCEEDED, result_url=url)
            return PollResult(PollState.FAILED, error=f"{self.name} succeeded without output")
        return PollResult(PollState.FAILED, error=f"{self.name} {status}: {body.get('error') or ''}".strip())


def fallback_strategies(client: VendorClient, api_base: str) -> list[ReplicateStrategy]:
    return [
        ReplicateStrategy(client, api_base, m["model"], m["strength"], m["guidance"])
        for m in REPLICATE_FALLBACK_MODELS
    ]
