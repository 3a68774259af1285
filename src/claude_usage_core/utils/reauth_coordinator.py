# src/claude_usage_core/utils/reauth_coordinator.py

"""
Interactive authorization coordinator.

Ensures only ONE browser-based OAuth flow runs at a time per client, so
at most one loopback listener and one browser prompt exist at any moment.
"""

import asyncio
import logging
import itertools
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

lib_logger = logging.getLogger("claude_usage_core")


class ReauthCoordinator:
    """
    Serializes interactive authorization flows.

    Requests queue on a semaphore of size 1; the coordinator tracks which
    account is being authorized and how many are waiting, for logging and
    status reporting.
    """

    def __init__(self):
        self._semaphore: asyncio.Semaphore = asyncio.Semaphore(1)

        self._tickets = itertools.count()
        self._pending: Dict[int, Tuple[str, float]] = {}  # ticket -> (account name, queue time)
        self._current: Optional[str] = None
        self._current_ticket: Optional[int] = None
        self._started_at: Optional[float] = None

        self._tracking_lock: asyncio.Lock = asyncio.Lock()

        self._total: int = 0
        self._succeeded: int = 0
        self._failed: int = 0

    async def execute(
        self,
        account_name: str,
        auth_func: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Run an interactive authorization with global serialization.

        Args:
            account_name: Account the flow is for (for logging)
            auth_func: Async function that performs the flow

        Returns:
            Whatever auth_func returns

        Raises:
            Any exception from auth_func is re-raised unchanged
        """
        async with self._tracking_lock:
            ticket = next(self._tickets)
            self._pending[ticket] = (account_name, time.time())
            if self._current:
                lib_logger.info(
                    f"[ReauthCoordinator] '{account_name}' queued for authorization "
                    f"(position {len(self._pending)}, currently authorizing '{self._current}')"
                )

        try:
            async with self._semaphore:
                async with self._tracking_lock:
                    _, queued_at = self._pending.pop(ticket, (account_name, time.time()))
                    self._current = account_name
                    self._current_ticket = ticket
                    self._started_at = time.time()
                    self._total += 1

                wait = time.time() - queued_at
                if wait > 1.0:
                    lib_logger.info(
                        f"[ReauthCoordinator] Starting authorization for '{account_name}' "
                        f"after waiting {wait:.1f}s in queue"
                    )
                else:
                    lib_logger.info(
                        f"[ReauthCoordinator] Starting authorization for '{account_name}'"
                    )

                try:
                    result = await auth_func()
                except Exception as e:
                    async with self._tracking_lock:
                        self._failed += 1
                    lib_logger.error(
                        f"[ReauthCoordinator] Authorization FAILED for '{account_name}': {e}"
                    )
                    raise

                async with self._tracking_lock:
                    self._succeeded += 1
                    duration = time.time() - self._started_at
                lib_logger.info(
                    f"[ReauthCoordinator] Authorization SUCCESS for '{account_name}' in {duration:.1f}s"
                )
                return result

        finally:
            async with self._tracking_lock:
                self._pending.pop(ticket, None)
                if self._current_ticket == ticket:
                    self._current = None
                    self._current_ticket = None
                    self._started_at = None

    def is_in_progress(self) -> bool:
        """Check if an authorization is currently running."""
        return self._current is not None

    def get_status(self) -> Dict[str, Any]:
        """Get current coordinator status for debugging/monitoring."""
        return {
            "current": self._current,
            "in_progress": self._current is not None,
            "duration": (time.time() - self._started_at) if self._started_at else None,
            "pending_count": len(self._pending),
            "pending": [name for name, _ in self._pending.values()],
            "stats": {
                "total": self._total,
                "successful": self._succeeded,
                "failed": self._failed,
            },
        }
