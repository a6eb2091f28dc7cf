from __future__ import annotations

import asyncio
import logging
import threading

from dataclasses import asdict, dataclass
from typing import Protocol

from celery import Celery

from mapxion.errors import ServiceUnavailableError
from mapxion.settings import Settings


logger = logging.getLogger(__name__)

PROCESS_TASK = "mapxion.process_job"


@dataclass(frozen=True)
class RetryPolicy:
    """Redelivery rule travelling with each dispatch message."""

    max_attempts: int = 3
    backoff: str = "exponential"
    base_delay: float = 5.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failed attempt (1-based)."""
        if self.backoff == "fixed":
            return self.base_delay
        return self.base_delay * 2 ** max(attempt - 1, 0)

    def next_delay(self, attempts_made: int) -> float | None:
        """Delay before the next attempt, or None once attempts are exhausted."""
        if attempts_made >= self.max_attempts:
            return None
        return self.delay_for(attempts_made)

    def as_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> RetryPolicy:
        if not data:
            return cls()
        return cls(
            max_attempts=int(data.get("max_attempts", 3)),
            backoff=str(data.get("backoff", "exponential")),
            base_delay=float(data.get("base_delay", 5.0)),
        )


@dataclass(frozen=True)
class DispatchMessage:
    job_id: str

    def to_payload(self) -> dict:
        return {"jobId": self.job_id}

    @classmethod
    def from_payload(cls, payload: dict) -> DispatchMessage:
        return cls(job_id=str(payload["jobId"]))


class ConnectionState:
    """Broker readiness, flipped by connect/error/close callbacks."""

    def __init__(self) -> None:
        self._ready = False
        self._lock = threading.Lock()

    def is_ready(self) -> bool:
        return self._ready

    def on_connect(self) -> None:
        with self._lock:
            if not self._ready:
                logger.info("broker ready")
            self._ready = True

    def on_error(self, exc: BaseException) -> None:
        with self._lock:
            if self._ready:
                logger.warning("broker error: %s", exc)
            self._ready = False

    def on_close(self) -> None:
        with self._lock:
            if self._ready:
                logger.info("broker connection closed")
            self._ready = False


class WorkQueue(Protocol):
    def is_ready(self) -> bool: ...

    def publish(self, message: DispatchMessage, policy: RetryPolicy) -> None: ...


class NullWorkQueue:
    """Stand-in used when no broker is configured; never ready."""

    def is_ready(self) -> bool:
        return False

    def publish(self, message: DispatchMessage, policy: RetryPolicy) -> None:
        raise ServiceUnavailableError("Work queue is not configured.")

    async def run_monitor(self, interval: float) -> None:
        return None

    def close(self) -> None:
        return None


class CeleryWorkQueue:
    def __init__(self, app: Celery, queue_name: str, state: ConnectionState | None = None) -> None:
        self.app = app
        self.queue_name = queue_name
        self.state = state or ConnectionState()

    def is_ready(self) -> bool:
        return self.state.is_ready()

    def publish(self, message: DispatchMessage, policy: RetryPolicy) -> None:
        self.app.send_task(
            PROCESS_TASK,
            kwargs={"payload": message.to_payload(), "retry_policy": policy.as_dict()},
            queue=self.queue_name,
            retry=True,
            retry_policy={"max_retries": 3, "interval_start": 0, "interval_step": 0.5, "interval_max": 2},
        )
        logger.info("job %s dispatched to %s", message.job_id, self.queue_name)

    def probe(self) -> bool:
        try:
            with self.app.connection_for_write() as conn:
                conn.ensure_connection(max_retries=1)
        except Exception as exc:
            self.state.on_error(exc)
            return False
        self.state.on_connect()
        return True

    async def run_monitor(self, interval: float) -> None:
        try:
            while True:
                await asyncio.to_thread(self.probe)
                await asyncio.sleep(interval)
        finally:
            self.state.on_close()

    def close(self) -> None:
        self.state.on_close()
        self.app.close()


def build_celery(settings: Settings) -> Celery:
    app = Celery("mapxion", broker=settings.broker_url)
    app.conf.update(
        task_default_queue=settings.queue_name,
        broker_connection_retry_on_startup=False,
    )
    return app


def build_work_queue(settings: Settings) -> CeleryWorkQueue | NullWorkQueue:
    if not settings.broker_url:
        logger.warning("no broker configured; submissions will be refused")
        return NullWorkQueue()
    return CeleryWorkQueue(build_celery(settings), settings.queue_name)


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        backoff="exponential",
        base_delay=settings.retry_base_delay,
    )
