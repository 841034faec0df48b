"""
Preset library: users pick a mood, we inject the actual prompt.

A preset is resolved once at submission; the job row stores the expanded
prompt so later catalog edits never change a job in flight.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Preset:
    key: str
    name: str
    prompt: str
    negative: str = ""
    strength: Optional[float] = None


PRESETS = {
    "adventure": Preset(
        key="adventure",
        name="Adventure Mode",
        prompt=(
            "epic adventure, heroic journey, exploration, discovery, thrilling action, "
            "cinematic lighting, dramatic composition"
        ),
        negative="boring, static, mundane, office, indoor, sitting, sleeping",
        strength=0.55,
    ),
    "romance": Preset(
        key="romance",
        name="Romance Mode",
        prompt=(
            "romantic atmosphere, love story, intimate moments, soft lighting, warm colors, "
            "emotional connection, dreamy mood"
        ),
        negative="violent, scary, dark, cold, harsh, aggressive, angry",
        strength=0.45,
    ),
    "mystery": Preset(
        key="mystery",
        name="Mystery Mode",
        prompt=(
            "mysterious atmosphere, suspense, intrigue, shadow play, dramatic lighting, "
            "enigmatic mood, detective story"
        ),
        negative="obvious, clear, bright, cheerful, simple, straightforward",
        strength=0.5,
    ),
    "comedy": Preset(
        key="comedy",
        name="Comedy Mode",
        prompt=(
            "funny, humorous, playful, lighthearted, silly, whimsical, cartoon-like, "
            "exaggerated expressions"
        ),
        negative="serious, sad, dark, scary, formal, professional",
        strength=0.6,
    ),
    "fantasy": Preset(
        key="fantasy",
        name="Fantasy Mode",
        prompt=(
            "magical, mystical, enchanted, otherworldly, fantasy elements, ethereal lighting, "
            "dreamlike atmosphere"
        ),
        negative="realistic, mundane, everyday, normal, boring, practical",
        strength=0.6,
    ),
    "travel": Preset(
        key="travel",
        name="Travel Mode",
        prompt=(
            "travel adventure, cultural exploration, new places, discovery, wanderlust, "
            "vibrant colors, dynamic composition"
        ),
        negative="home, familiar, routine, boring, static, indoor",
        strength=0.5,
    ),
}


def get_preset(key: str) -> Optional[Preset]:
    """Look up a preset by key. Returns None if not found."""
    return PRESETS.get(key)


def list_presets() -> list[dict]:
    """Return all presets as a list (for the frontend picker)."""
    return [
        {"key": p.key, "name": p.name, "prompt": p.prompt}
        for p in PRESETS.values()
    ]
