"""Browser fingerprint randomization for search sessions.

Each retrieval run gets a fresh profile (user agent, viewport, timezone,
locale) that is applied when the browser context is created. When the stored
session was captured with a known user agent it is reused, since the site
ties ``li_at`` to the browser that minted it.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

CURATED_USER_AGENTS: list[str] = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
]

# Desktop sizes common enough not to stand out
VIEWPORTS: list[tuple[int, int]] = [
    (1920, 1080),
    (1536, 864),
    (1440, 900),
    (1366, 768),
    (1280, 800),
]

REGION_PROFILES: dict[str, tuple[list[str], str]] = {
    "US": (["America/New_York", "America/Chicago", "America/Denver", "America/Los_Angeles"], "en-US"),
    "GB": (["Europe/London"], "en-GB"),
    "CA": (["America/Toronto", "America/Vancouver"], "en-CA"),
    "AU": (["Australia/Sydney", "Australia/Melbourne"], "en-AU"),
    "DE": (["Europe/Berlin"], "de-DE"),
    "IN": (["Asia/Kolkata"], "en-IN"),
}

WEBDRIVER_OVERRIDE_JS = """
() => {
    Object.defineProperty(navigator, 'webdriver', { get: () => undefined, configurable: true });
    if (!window.chrome) { window.chrome = {}; }
    if (!window.chrome.runtime) { window.chrome.runtime = {}; }
}
"""


@dataclass
class FingerprintProfile:
    user_agent: str
    viewport_width: int
    viewport_height: int
    timezone: str
    locale: str

    def context_options(self) -> dict:
        """Keyword arguments for ``Browser.new_context``."""
        return {
            "user_agent": self.user_agent,
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
            "timezone_id": self.timezone,
            "locale": self.locale,
        }


class FingerprintRandomizer:
    """Generates geo-consistent fingerprint profiles."""

    def __init__(self, *, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def generate(
        self,
        region: str | None = None,
        user_agent: str | None = None,
    ) -> FingerprintProfile:
        """Return a random profile.

        Parameters
        ----------
        region:
            Two-letter country code of the exit proxy. Unknown or missing
            regions fall back to US.
        user_agent:
            Pin the user agent instead of drawing one.
        """
        width, height = self._rng.choice(VIEWPORTS)
        timezones, locale = REGION_PROFILES.get((region or "US").upper(), REGION_PROFILES["US"])
        return FingerprintProfile(
            user_agent=user_agent or self._rng.choice(CURATED_USER_AGENTS),
            viewport_width=width,
            viewport_height=height,
            timezone=self._rng.choice(timezones),
            locale=locale,
        )
