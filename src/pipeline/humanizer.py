"""Human-like pacing and input for the browser tier.

Every wait goes through ``Humanizer`` so tests can inject a seeded RNG and a
no-op sleep. Long waits are taken in short slices and re-check a stop flag,
which is how a pause or cancel reaches a run that is between pages.
"""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING, Awaitable, Callable

if TYPE_CHECKING:
    from playwright.async_api import Page

Sleeper = Callable[[float], Awaitable[None]]
StopFlag = Callable[[], bool]


class Humanizer:
    """Randomized delays, scrolling, mouse movement and typing."""

    def __init__(
        self,
        *,
        rng: random.Random | None = None,
        sleep: Sleeper | None = None,
        slice_seconds: float = 1.0,
    ) -> None:
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep
        self._slice_seconds = slice_seconds

    def uniform_ms(self, min_ms: int, max_ms: int) -> int:
        return self._rng.randint(min_ms, max(min_ms, max_ms))

    def inter_page_delay_ms(self, base_ms: int = 25000, jitter_ms: int = 20000) -> int:
        """``base + rand * jitter`` milliseconds."""
        return int(base_ms + self._rng.random() * jitter_ms)

    async def pause(self, min_ms: int, max_ms: int) -> None:
        await self._sleep(self.uniform_ms(min_ms, max_ms) / 1000.0)

    async def wait(self, total_seconds: float, should_stop: StopFlag | None = None) -> bool:
        """Sleep *total_seconds* in slices.

        Returns
        -------
        bool
            True if *should_stop* turned true before the time was up.
        """
        remaining = total_seconds
        while remaining > 0:
            if should_stop is not None and should_stop():
                return True
            step = min(self._slice_seconds, remaining)
            await self._sleep(step)
            remaining -= step
        return should_stop is not None and should_stop()

    async def scroll(self, page: "Page", min_px: int = 200, max_px: int = 500) -> None:
        """Scroll down in a few uneven wheel steps."""
        distance = self.uniform_ms(min_px, max_px)
        steps = self._rng.randint(2, 4)
        for _ in range(steps):
            await page.mouse.wheel(0, distance / steps)
            await self.pause(80, 250)

    async def move_mouse(self, page: "Page", width: int = 1280, height: int = 720) -> None:
        x = self._rng.randint(int(width * 0.1), int(width * 0.9))
        y = self._rng.randint(int(height * 0.1), int(height * 0.9))
        await page.mouse.move(x, y, steps=self._rng.randint(5, 15))

    async def type_text(self, page: "Page", text: str, min_ms: int = 50, max_ms: int = 100) -> None:
        """Type *text* one key at a time with 50-100 ms between keys."""
        for char in text:
            await page.keyboard.type(char)
            await self.pause(min_ms, max_ms)
