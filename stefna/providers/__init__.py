"""
Provider adapters.

Every vendor is wrapped as a strategy with the same generate/poll contract;
`ProviderChain` tries them in tier order and returns the first usable handle.
"""

from .base import (
    GenerationRequest,
    PollResult,
    PollState,
    ProviderChain,
    ProviderHandle,
    first_success,
)
from .factory import ProviderFactory

__all__ = [
    "GenerationRequest",
    "PollResult",
    "PollState",
    "ProviderChain",
    "ProviderFactory",
    "ProviderHandle",
    "first_success",
]
