"""
Ordered fire-and-forget delivery of hub reports.

The state machine never awaits a report: it submits one and moves on.
Reports still go out in submission order (start before progress,
mark-played before stop), failures are logged and dropped, and drain()
lets shutdown wait for the last stop report before the process exits.

Usage:
    reporter = Reporter()
    reporter.submit("start", lambda: hub.report_start(item, 0, psid))
    await reporter.drain()
"""

import asyncio
import logging

logger = logging.getLogger(__name__)


class Reporter:
    """Chains report coroutines so each runs after the previous one finished."""

    def __init__(self):
        self._tail: asyncio.Future | None = None
        self._pending = 0

    @property
    def pending(self) -> int:
        return self._pending

    def submit(self, name: str, factory, quiet: bool = False) -> asyncio.Future:
        """Queue *factory()* (a coroutine function) behind earlier reports.

        quiet=True logs failures at debug level (best-effort progress).
        """
        previous = self._tail
        self._pending += 1
        self._tail = asyncio.ensure_future(self._run(previous, name, factory, quiet))
        return self._tail

    async def _run(self, previous, name, factory, quiet):
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            await factory()
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if quiet:
                logger.debug("Report %s failed: %s", name, e)
            else:
                logger.error("Report %s failed: %s", name, e)
            return False
        finally:
            self._pending -= 1

    async def drain(self, timeout: float | None = None):
        """Wait until every submitted report has finished."""
        while self._tail is not None and not self._tail.done():
            done, _ = await asyncio.wait([self._tail], timeout=timeout)
            if not done:
                logger.warning("Gave up waiting for %d outstanding reports", self._pending)
                return
