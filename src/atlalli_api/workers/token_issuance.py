"""Rotating token issuance for an open redemption screen."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable

from loguru import logger

from atlalli_api.services.redemption import RedemptionService, resolve_window

TokenCallback = Callable[[str], Awaitable[Any] | Any]
TickCallback = Callable[[int], Awaitable[Any] | Any]


async def _deliver(callback: Callable[[Any], Any] | None, value: Any) -> None:
    if callback is None:
        return
    result = callback(value)
    if inspect.isawaitable(result):
        await result


class TokenIssuanceLoop:
    """Re-signs a token one second before the refresh window elapses.

    Windows shorter than two seconds are re-signed at half the window.

    A separate countdown task reports the seconds left on the displayed token.
    The countdown is cosmetic; freshness is enforced when the code is scanned.
    """

    def __init__(
        self,
        service: RedemptionService,
        *,
        promotion_id: str,
        venue_id: str,
        subject_id: str,
        on_token: TokenCallback,
        on_tick: TickCallback | None = None,
        refresh_window_seconds: int | None = None,
    ) -> None:
        self._service = service
        self.promotion_id = promotion_id
        self.venue_id = venue_id
        self.subject_id = subject_id
        self._on_token = on_token
        self._on_tick = on_tick
        self.refresh_window_seconds = resolve_window(refresh_window_seconds, service.refresh_window_seconds)
        # strictly shorter than the window
        self.interval_seconds: float = max(self.refresh_window_seconds - 1, self.refresh_window_seconds / 2)
        self.tick_seconds = 1.0
        self.current_token: str | None = None
        self.issued_at: int | None = None
        self.issued_count = 0
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.is_running: bool = False

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._tasks = [asyncio.create_task(self._run_loop())]
        if self._on_tick is not None:
            self._tasks.append(asyncio.create_task(self._countdown_loop()))
        self.is_running = True
        logger.info(
            "Token issuance loop started",
            venue_id=self.venue_id,
            promotion_id=self.promotion_id,
            interval_seconds=self.interval_seconds,
        )

    async def stop(self) -> None:
        if not self._tasks:
            return
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.is_running = False
        logger.info("Token issuance loop stopped", venue_id=self.venue_id, issued=self.issued_count)

    async def __aenter__(self) -> "TokenIssuanceLoop":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def seconds_remaining(self) -> int:
        if self.issued_at is None:
            return self.refresh_window_seconds
        elapsed = self._service.now() - self.issued_at
        return max(self.refresh_window_seconds - elapsed, 0)

    async def run_once(self) -> str:
        encoded = await self._service.request_token(self.promotion_id, self.venue_id, self.subject_id)
        if self._stop_event.is_set():
            return encoded
        self.current_token = encoded
        self.issued_at = self._service.now()
        self.issued_count += 1
        await _deliver(self._on_token, encoded)
        return encoded

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception(
                    "Token issuance iteration failed",
                    venue_id=self.venue_id,
                    error=str(exc),
                )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _countdown_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                try:
                    await _deliver(self._on_tick, self.seconds_remaining())
                except Exception as exc:
                    logger.exception("Countdown tick failed", venue_id=self.venue_id, error=str(exc))
