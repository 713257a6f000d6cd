"""
Credit prices per artifact kind.
Any change here affects billing for every segment request.
"""
import math
from typing import Optional

from .models import ArtifactKind

TEXT_CREDITS = 2
IMAGE_CREDITS = 1
AUDIO_WORDS_PER_CREDIT = 100
MIN_CHARGE = 1


def count_words(text: Optional[str]) -> int:
    if not text:
        return 0
    return len(text.split())


def audio_credits(text: Optional[str]) -> int:
    """1 credit per 100 words of narration, rounded up, never below the minimum charge."""
    return max(MIN_CHARGE, math.ceil(count_words(text) / AUDIO_WORDS_PER_CREDIT))


def price_for(kind: ArtifactKind, *, narration: Optional[str] = None, quoted: Optional[int] = None) -> int:
    if kind == ArtifactKind.TEXT:
        return TEXT_CREDITS
    if kind == ArtifactKind.IMAGE:
        return IMAGE_CREDITS
    if kind == ArtifactKind.AUDIO:
        return audio_credits(narration)
    if kind == ArtifactKind.VIDEO:
        if quoted is None:
            raise ValueError("video pricing requires an adapter quote")
        return max(MIN_CHARGE, int(quoted))
    raise ValueError(f"no price for artifact kind {kind!r}")
