# src/claude_usage_core/background_refresher.py

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from .tokens import REFRESH_LEAD_MINUTES

if TYPE_CHECKING:
    from .client import ClaudeUsageClient

lib_logger = logging.getLogger("claude_usage_core")

DEFAULT_REFRESH_INTERVAL = 600


class BackgroundRefresher:
    """
    A background task that periodically refreshes OAuth tokens that are
    expired or about to expire, so stored accounts stay usable between
    usage fetches.
    """

    def __init__(
        self,
        client: "ClaudeUsageClient",
        interval: float = DEFAULT_REFRESH_INTERVAL,
        lead_minutes: int = REFRESH_LEAD_MINUTES,
    ):
        if interval <= 0:
            lib_logger.warning(
                f"Invalid refresh interval '{interval}'. Falling back to {DEFAULT_REFRESH_INTERVAL}s."
            )
            interval = DEFAULT_REFRESH_INTERVAL
        self._client = client
        self._interval = interval
        self._lead_minutes = lead_minutes
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Starts the background refresh task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            lib_logger.info(
                f"Background token refresher started. Check interval: {self._interval} seconds."
            )

    async def stop(self):
        """Stops the background refresh task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            lib_logger.info("Background token refresher stopped.")

    async def run_once(self):
        """One refresh pass. Errors are logged, never raised."""
        try:
            results = await self._client.refresh_expiring_tokens(self._lead_minutes)
        except Exception as e:
            lib_logger.error(f"Error during background token refresh: {e}")
            return
        failed = [name for name, result in results.items() if not result.success]
        if results:
            lib_logger.info(
                f"Background refresh: {len(results) - len(failed)} refreshed, {len(failed)} failed"
            )
        for name in failed:
            lib_logger.warning(f"Background refresh failed for '{name}': {results[name].error}")

    async def _run(self):
        """The main loop for the background task."""
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)
