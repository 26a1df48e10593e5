"""Anti-bot interstitial detection."""

from typing import Iterable, Optional


def detect_challenge(body: str, markers: Iterable[str]) -> Optional[str]:
    """Return the first challenge marker found in the body, if any.

    Plain substring match against the raw body.
    """
    if not body:
        return None
    for marker in markers:
        if marker and marker in body:
            return marker
    return None


def is_challenge_page(body: str, markers: Iterable[str]) -> bool:
    return detect_challenge(body, markers) is not None
