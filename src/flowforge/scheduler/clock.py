"""Cron clock: periodic scan firing due schedules."""
import threading
from datetime import datetime

from flowforge.observability import get_logger
from flowforge.scheduler.registry import ScheduleRegistry

logger = get_logger(__name__)


class CronClock:
    """
    Ticks at a fixed interval and fires every due schedule.

    Each schedule fires inside its own failure boundary: an exception is
    logged with the schedule id and the remaining schedules still fire.
    Several clocks may share one store; the per-schedule lock and the
    idempotent run job id keep a duplicate tick from starting a second run.
    """

    def __init__(self, registry: ScheduleRegistry, interval_s: float = 60):
        self.registry = registry
        self.interval_s = interval_s
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self, now: datetime | None = None) -> dict[str, int]:
        """
        Fire due schedules once.

        Returns:
            Counts of fired, skipped and failed schedules
        """
        now = now or self.registry.now()
        fired = skipped = failed = 0

        for schedule in self.registry.find_due(now):
            try:
                job = self.registry.execute_scheduled_workflow(schedule.id, now=now)
            except Exception:
                failed += 1
                logger.exception(
                    "Scheduled execution failed",
                    extra={"schedule_id": schedule.id, "workflow_id": schedule.workflow_id},
                )
                continue
            if job is None:
                skipped += 1
            else:
                fired += 1

        try:
            rearmed = self.registry.ensure_armed(now)
        except Exception:
            rearmed = 0
            logger.exception("Re-arming schedules failed")

        if fired or failed or rearmed:
            logger.info(
                "Clock tick",
                extra={"fired": fired, "skipped": skipped, "failed": failed, "rearmed": rearmed},
            )
        return {"fired": fired, "skipped": skipped, "failed": failed, "rearmed": rearmed}

    def start(self) -> None:
        """Run the clock in a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="cron-clock", daemon=True)
        self._thread.start()
        logger.info(f"Cron clock started (interval {self.interval_s}s)")

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Cron clock stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Clock tick failed")
            self._stop_event.wait(self.interval_s)
