"""
Uniform provider contract and the multi-tier fallback chain.

A strategy wraps one vendor model/tier.  `generate` either returns the final
asset (synchronous vendors) or an opaque provider job id to poll
(asynchronous vendors).  A strategy signals a hard failure by raising; the
chain then moves on to the next tier.  "Still processing" is never a failure
at this layer.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

from ..errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class GenerationRequest:
    prompt: str
    source_url: str
    negative_prompt: str = ""
    strength: float = 0.45
    steps: int = 30
    guidance: float = 7.5
    seed: Optional[int] = None
    width: int = 1024
    height: int = 1024
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderHandle:
    """What a strategy hands back: a finished asset or a job to poll."""

    strategy: str
    params: dict[str, Any] = field(default_factory=dict)
    result_url: Optional[str] = None
    provider_job_id: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return bool(self.result_url)


class PollState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PollResult:
    state: PollState
    result_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.state != PollState.RUNNING


class ProviderStrategy(Protocol):
    name: str
    params: dict[str, Any]

    def generate(self, request: GenerationRequest) -> ProviderHandle: ...

    def poll(self, provider_job_id: str) -> PollResult: ...


def first_success(strategies: Sequence[ProviderStrategy], request: GenerationRequest) -> ProviderHandle:
    """
    Try each strategy in order; the first usable handle wins.

    Raises a single ProviderError naming the last failure once every tier has
    been exhausted.
    """
    if not strategies:
        raise ProviderError("No provider strategies configured")

    failures: list[str] = []
    for strategy in strategies:
        try:
            logger.info(f"Trying provider tier {strategy.name}")
            handle = strategy.generate(request)
        except Exception as e:
            logger.warning(f"Provider tier {strategy.name} failed: {e}")
            failures.append(f"{strategy.name}: {e}")
            continue

        if handle is None or not (handle.result_url or handle.provider_job_id):
            logger.warning(f"Provider tier {strategy.name} returned no asset and no job id")
            failures.append(f"{strategy.name}: empty response")
            continue

        handle.strategy = strategy.name
        handle.params = {**strategy.params, **(handle.params or {})}
        logger.info(f"Provider tier {strategy.name} accepted the request")
        return handle

    tried = ", ".join(s.name for s in strategies)
    raise ProviderError(f"All providers failed ({tried}). Last error: {failures[-1]}")


class ProviderChain:
    """Ordered tiers for one job kind plus routing of polls back to the winner."""

    def __init__(self, strategies: Sequence[ProviderStrategy]):
        self._strategies = list(strategies)
        self._by_name = {s.name: s for s in self._strategies}

    @property
    def names(self) -> list[str]:
        return [s.name for s in self._strategies]

    def generate(self, request: GenerationRequest) -> ProviderHandle:
        return first_success(self._strategies, request)

    def poll(self, handle: ProviderHandle) -> PollResult:
        strategy = self._by_name.get(handle.strategy)
        if strategy is None:
            raise ProviderError(f"Unknown provider strategy {handle.strategy!r}")
        if not handle.provider_job_id:
            raise ProviderError(f"Handle from {handle.strategy} has nothing to poll")
        return strategy.poll(handle.provider_job_id)
