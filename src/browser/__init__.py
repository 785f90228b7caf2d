"""Browser pool and fingerprint randomization components."""

from src.browser.fingerprint import (
    CURATED_USER_AGENTS,
    FingerprintProfile,
    FingerprintRandomizer,
)
from src.browser.pool import CHROMIUM_ARGS, BrowserInstance, BrowserPool

__all__ = [
    "CHROMIUM_ARGS",
    "CURATED_USER_AGENTS",
    "BrowserInstance",
    "BrowserPool",
    "FingerprintProfile",
    "FingerprintRandomizer",
]
