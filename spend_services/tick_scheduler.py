"""
CardActionScheduler -- In-process polling driver for CardActionExecutor.

Contract:
    Calls ``executor.tick()`` every ``tick_interval_seconds`` on a
    background thread until stopped.

Invariants enforced:
    - A tick failure is logged and never kills the loop.
    - An overlapping tick (TickInProgressError) is skipped, not queued.
    - ``stop()`` lets the current tick finish before the thread exits.
"""

from __future__ import annotations

import threading

from spend_kernel.domain.card_action import ExecutedAction
from spend_kernel.exceptions import TickInProgressError
from spend_kernel.logging_config import get_logger
from spend_services.card_action_executor import CardActionExecutor

logger = get_logger("services.card_scheduler")


class CardActionScheduler:
    """Background thread that fires due card actions on an interval.

    Non-goals:
        - NOT a distributed scheduler (one process owns the tick).
    """

    def __init__(
        self,
        executor: CardActionExecutor,
        tick_interval_seconds: int = 60,
    ):
        self._executor = executor
        self._tick_interval = tick_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> tuple[ExecutedAction, ...]:
        """Run one tick (public for testing); returns what fired."""
        try:
            return self._executor.tick()
        except TickInProgressError:
            logger.warning("card_tick_skipped_overlap")
            return ()
        except Exception:
            logger.exception("card_tick_failed")
            return ()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="card-action-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("card_scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait up to ``timeout`` seconds for the thread."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("card_scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._tick_interval)
