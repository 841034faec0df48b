import logging

import requests

from ..config import ProviderConfig
from ..pipeline.models import JobKind
from .aiml import AimlImageStrategy, AimlVideoStrategy
from .base import ProviderChain
from .fal import FalQueueStrategy
from .http import VendorClient
from .replicate import fallback_strategies

logger = logging.getLogger(__name__)

AIML_IMAGE_MODEL = "flux/dev/image-to-image"
FAL_IMAGE_MODELS = ["fal-ai/flux/schnell/redux", "fal-ai/flux-pro/kontext"]
FAL_VIDEO_MODELS = ["fal-ai/kling-video/v2.1/pro/image-to-video", "fal-ai/wan-pro/image-to-video"]


class ProviderFactory:
    """Builds the ordered tiers for each job kind from whichever vendors have keys."""

    def __init__(self, config: ProviderConfig, session: requests.Session):
        self._config = config
        self._session = session

    def _client(self, name: str, header: dict) -> VendorClient:
        return VendorClient(
            self._session,
            name,
            header,
            max_retries=self._config.max_retries,
            timeout=self._config.request_timeout,
        )

    def build_chain(self, kind: JobKind) -> ProviderChain:
        cfg = self._config
        aiml = self._client("aiml", {"Authorization": f"Bearer {cfg.aiml_api_key}"}) if cfg.aiml_api_key else None
        fal = self._client("fal", {"Authorization": f"Key {cfg.fal_api_key}"}) if cfg.fal_api_key else None
        replicate = (
            self._client("replicate", {"Authorization": f"Bearer {cfg.replicate_api_key}"})
            if cfg.replicate_api_key else None
        )

        strategies = []
        if kind == JobKind.VIDEO_TO_VIDEO:
            if aiml:
                strategies.append(AimlVideoStrategy(aiml, cfg.aiml_api_base))
            if fal:
                strategies.extend(FalQueueStrategy(fal, cfg.fal_queue_base, m, video=True) for m in FAL_VIDEO_MODELS)
        else:
            if aiml:
                strategies.append(AimlImageStrategy(aiml, cfg.aiml_api_base, AIML_IMAGE_MODEL))
            if fal:
                strategies.extend(FalQueueStrategy(fal, cfg.fal_queue_base, m) for m in FAL_IMAGE_MODELS)
            if replicate:
                strategies.extend(fallback_strategies(replicate, cfg.replicate_api_base))

        if not strategies:
            logger.warning(f"No provider credentials configured for {kind.value} jobs")
        return ProviderChain(strategies)

    def build_chains(self) -> dict:
        return {kind: self.build_chain(kind) for kind in JobKind}
