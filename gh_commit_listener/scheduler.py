"""Cron-style periodic triggers, one daemon thread per job."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from croniter import croniter

from .errors import ConfigError

log = logging.getLogger(__name__)


class Job:
    def __init__(self, name: str, expression: str, func) -> None:
        if not croniter.is_valid(expression):
            raise ConfigError(f"invalid cron expression for {name}: {expression!r}")
        self.name = name
        self.expression = expression
        self.func = func
        self.wake = threading.Event()

    def next_fire(self, now: datetime) -> datetime:
        return croniter(self.expression, now).get_next(datetime)


class Scheduler:
    """Fires each job on its schedule.

    Every firing runs in a fresh thread, so a slow run never delays the
    next trigger and runs of the same job may overlap.
    """

    def __init__(self, clock=None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._jobs: dict[str, Job] = {}
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

    def add_job(self, name: str, expression: str, func) -> Job:
        job = Job(name, expression, func)
        self._jobs[name] = job
        return job

    def start(self) -> None:
        for job in self._jobs.values():
            t = threading.Thread(target=self._trigger_loop, args=(job,), name=f"cron-{job.name}", daemon=True)
            t.start()
            self._threads.append(t)
            log.info("Scheduled %s (%s)", job.name, job.expression)

    def run_now(self, name: str) -> None:
        self._jobs[name].wake.set()

    def stop(self) -> None:
        self._stop_event.set()
        for job in self._jobs.values():
            job.wake.set()
        for t in self._threads:
            t.join(timeout=5)
        self._threads.clear()

    def _trigger_loop(self, job: Job) -> None:
        target = job.next_fire(self._clock())
        while not self._stop_event.is_set():
            delay = (target - self._clock()).total_seconds()
            # Interruptible sleep; set by run_now and stop
            woken = job.wake.wait(timeout=max(0.0, delay))
            job.wake.clear()
            if self._stop_event.is_set():
                break
            now = self._clock()
            if not woken and now < target:
                # Timer expired before the wall clock reached the fire time
                continue
            threading.Thread(target=self._run, args=(job,), name=f"run-{job.name}", daemon=True).start()
            if now >= target:
                target = job.next_fire(now)

    @staticmethod
    def _run(job: Job) -> None:
        log.debug("started cron job %s", job.name)
        try:
            job.func()
        except Exception:
            log.exception("Job %s failed", job.name)
