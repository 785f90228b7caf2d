"""Bot-detection challenge detection.

Pure functions of the page HTML and URL path. Markup indicators are matched
case-insensitively against the raw HTML; text phrases against the HTML as
well, since the challenge copy is rendered server-side.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse

MARKUP_INDICATORS: tuple[str, ...] = (
    "captcha-internal",
    "g-recaptcha",
    "h-captcha",
    "cf-turnstile",
    "challenge-form",
    "captcha-box",
    "captcha_container",
    "captcha-container",
    "arkose-iframe",
    'id="captcha"',
    'class="captcha"',
    "data-captcha",
)

TEXT_INDICATORS: tuple[str, ...] = (
    "please verify you are human",
    "verify you are human",
    "security verification required",
    "unusual activity detected",
    "confirm you are not a robot",
    "complete the security check",
    "solve this puzzle",
    "let's do a quick security check",
)

# Matched against the URL path only; search keywords live in the query string
URL_MARKERS: tuple[str, ...] = ("/checkpoint", "/challenge", "/uas/", "/security-verification")


@dataclass(frozen=True)
class ChallengeCheck:
    detected: bool
    indicator: str | None = None


def url_is_challenge(url: str | None) -> bool:
    if not url:
        return False
    lowered = urlparse(url).path.lower()
    return any(marker in lowered for marker in URL_MARKERS)


def detect_challenge(html: str | None, url: str | None = None) -> ChallengeCheck:
    """Return the first matching indicator, checking the URL first."""
    if url_is_challenge(url):
        return ChallengeCheck(True, f"url:{url}")
    if not html:
        return ChallengeCheck(False)

    lowered = html.lower()
    for indicator in MARKUP_INDICATORS + TEXT_INDICATORS:
        if indicator in lowered:
            return ChallengeCheck(True, indicator)
    return ChallengeCheck(False)
