"""Systemd notify + watchdog heartbeat for the bridge.

Sends READY=1 once and WATCHDOG=1 every *interval* seconds while the
supplied health check passes.  When the check fails the heartbeat stops and
systemd (WatchdogSec=) restarts the service.  No-ops when NOTIFY_SOCKET is
unset (dev mode, tests).

Usage:
    from hubbridge.lib.watchdog import watchdog_loop
    asyncio.create_task(watchdog_loop(lambda: orchestrator.running))
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def sd_notify(msg: str) -> bool:
    """Send *msg* to the systemd notify socket. Returns False when unset."""
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.debug("sd_notify(%s) failed: %s", msg, e)
        return False
    finally:
        sock.close()
    return True


async def watchdog_loop(is_healthy=None, interval: int = 20):
    """Heartbeat until *is_healthy()* returns False. Run as a task."""
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%ds)", interval)
    while is_healthy is None or is_healthy():
        sd_notify("WATCHDOG=1")
        await asyncio.sleep(interval)
    logger.error("Dispatch loop not running, stopping watchdog, systemd will restart us")
