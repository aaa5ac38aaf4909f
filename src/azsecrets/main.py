"""Rotation daemon: periodically applies the root rotation policy."""

from __future__ import annotations

import logging
import signal
import threading

from .backend import Backend
from .errors import AzSecretsError
from .settings import Settings

logger = logging.getLogger(__name__)


def run_rotation_loop(
    backend: Backend,
    settings: Settings,
    stop: threading.Event | None = None,
) -> int:
    """Check the rotation policy every interval until stopped.

    Failures are logged and retried on the next tick; the stored
    credential is never left half rotated.

    Returns:
        Exit code (0 for a clean shutdown).
    """
    stop = stop or threading.Event()

    def signal_handler(signum: int, _frame: object) -> None:
        logger.info("Received signal", extra={"signal": signal.Signals(signum).name})
        stop.set()

    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, signal_handler)

    logger.info(
        "Starting rotation loop",
        extra={"interval_seconds": settings.rotation_check_interval_seconds},
    )

    while not stop.is_set():
        try:
            result = backend.rotation_tick()
            if result.rotated:
                logger.info("Root credential rotated", extra={"key_id": result.key_id})
            else:
                logger.debug("Rotation skipped", extra={"reason": result.skipped_reason})
        except AzSecretsError as e:
            logger.error(
                "Scheduled rotation failed",
                extra={"error": str(e), "error_type": type(e).__name__, "retryable": e.retryable},
            )
        stop.wait(settings.rotation_check_interval_seconds)

    logger.info("Rotation loop stopped")
    return 0
