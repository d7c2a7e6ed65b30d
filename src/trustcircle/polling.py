"""
Client polling loops.

The client submits presence evidence hourly during the night window,
captures an accelerometer burst every four hours and refreshes the badge
seed every 30 seconds. Each loop is a ``PollingJob`` running on its own
daemon thread; all jobs of a ``ClientPoller`` share one stop event, so
``stop()`` cancels every loop at once and no tick starts afterwards.

A tick that raises is logged and the loop carries on; the next poll is the
retry.
"""

from dataclasses import dataclass, field
import threading
import time
from typing import Callable, Dict, List, Optional

import structlog

from .constants import MOVEMENT_POLL_SECONDS, PRESENCE_POLL_SECONDS, SEED_REFRESH_SECONDS
from .exceptions import InputValidationError

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Seconds to wait for a loop thread to exit on stop
SHUTDOWN_JOIN_TIMEOUT_SEC = 5.0


@dataclass
class PollingJob:
    """
    One periodic client task.

    Parameters
    ----------
    name : str
        Thread and log name.
    interval_sec : float
        Delay between tick starts.
    tick : callable
        Work for one poll; takes no arguments.
    run_immediately : bool, default=True
        Run the first tick on start instead of after one interval.
    """

    name: str
    interval_sec: float
    tick: Callable[[], object]
    run_immediately: bool = True
    ticks: int = field(default=0, init=False)
    failures: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if self.interval_sec <= 0:
            raise InputValidationError(
                f"Polling interval must be positive: {self.interval_sec}", field="interval_sec"
            )

    def run(self, stop_event: threading.Event) -> None:
        """Loop until ``stop_event`` is set."""
        logger.info("Polling job started", job=self.name, interval_sec=self.interval_sec)
        if not self.run_immediately:
            stop_event.wait(timeout=self.interval_sec)

        while not stop_event.is_set():
            tick_start = time.monotonic()
            self.ticks += 1
            try:
                self.tick()
            except Exception as e:
                self.failures += 1
                logger.warning("Polling tick failed", job=self.name, tick=self.ticks, error=str(e))

            remaining = self.interval_sec - (time.monotonic() - tick_start)
            if remaining > 0:
                stop_event.wait(timeout=remaining)

        logger.info("Polling job stopped", job=self.name, ticks=self.ticks, failures=self.failures)


class ClientPoller:
    """Runs a set of ``PollingJob``s on daemon threads."""

    def __init__(self, jobs: Optional[List[PollingJob]] = None) -> None:
        self.jobs: List[PollingJob] = list(jobs or [])
        self._stop_event = threading.Event()
        self._threads: Dict[str, threading.Thread] = {}

    @classmethod
    def standard(
        cls,
        submit_presence: Callable[[], object],
        capture_movement: Callable[[], object],
        refresh_seed: Callable[[], object],
    ) -> "ClientPoller":
        """Poller with the default presence, movement and seed cadences."""
        return cls(
            [
                PollingJob("presence", PRESENCE_POLL_SECONDS, submit_presence),
                PollingJob("movement", MOVEMENT_POLL_SECONDS, capture_movement),
                PollingJob("seed-refresh", SEED_REFRESH_SECONDS, refresh_seed),
            ]
        )

    def add_job(self, job: PollingJob) -> None:
        if self.running:
            raise InputValidationError("Cannot add jobs to a running poller", field="jobs")
        self.jobs.append(job)

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads.values())

    def start(self) -> None:
        """Start every job; a stopped poller cannot be restarted."""
        if self._stop_event.is_set():
            raise InputValidationError("Poller was stopped", field="state")
        for job in self.jobs:
            if job.name in self._threads:
                continue
            thread = threading.Thread(
                target=job.run,
                args=(self._stop_event,),
                name=f"poll-{job.name}",
                daemon=True,
            )
            self._threads[job.name] = thread
            thread.start()

    def stop(self, timeout: float = SHUTDOWN_JOIN_TIMEOUT_SEC) -> None:
        """Cancel every loop and wait for the threads to exit."""
        self._stop_event.set()
        for name, thread in self._threads.items():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Polling job did not stop in time", job=name)
