from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional


JobFunc = Callable[[], Awaitable[Any]]


@dataclass(slots=True)
class Job:
    name: str
    interval_seconds: float
    func: JobFunc
    description: str = ""
    run_on_start: bool = False


@dataclass(slots=True)
class JobState:
    status: str = "idle"
    run_count: int = 0
    consecutive_errors: int = 0
    last_started: Optional[datetime] = None
    last_completed: Optional[datetime] = None
    last_error: Optional[str] = None
    paused: bool = False


class BackgroundRuntime:
    """Runs named periodic maintenance jobs, each in its own task."""

    def __init__(
        self,
        *,
        logger: Optional[logging.Logger] = None,
        tick_timeout_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.logger = logger or logging.getLogger("zestswap.runtime")
        self._jobs: Dict[str, Job] = {}
        self._state: Dict[str, JobState] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._running = False
        self._started_at: Optional[datetime] = None
        self._tick_timeout = tick_timeout_seconds
        self._sleep = sleep

    # ---------------------------
    # Registration
    # ---------------------------
    def register_job(
        self,
        name: str,
        interval_seconds: float,
        func: JobFunc,
        *,
        description: str = "",
        run_on_start: bool = False,
    ) -> None:
        if name in self._jobs:
            raise ValueError(f"Job '{name}' already registered")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._jobs[name] = Job(
            name=name,
            interval_seconds=interval_seconds,
            func=func,
            description=description,
            run_on_start=run_on_start,
        )
        self._state[name] = JobState()
        if self._running:
            self._spawn(self._jobs[name])
        self.logger.info("Registered job %s (every %ss)", name, interval_seconds)

    def unregister_job(self, name: str) -> None:
        self._jobs.pop(name, None)
        self._state.pop(name, None)
        task = self._tasks.pop(name, None)
        if task:
            task.cancel()

    # ---------------------------
    # Lifecycle
    # ---------------------------
    async def start(self) -> None:
        async with self._lock:
            if self._running:
                return
            self._running = True
            self._started_at = datetime.now(timezone.utc)
            self.logger.info("Background runtime starting with %d jobs", len(self._jobs))
            for job in self._jobs.values():
                self._spawn(job)

    async def stop(self) -> None:
        async with self._lock:
            if not self._running:
                return
            self._running = False
            self.logger.info("Background runtime stopping")

            tasks = list(self._tasks.values())
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            self._tasks.clear()

    @property
    def is_running(self) -> bool:
        return self._running

    # ---------------------------
    # Execution
    # ---------------------------
    def _spawn(self, job: Job) -> None:
        self._tasks[job.name] = asyncio.create_task(self._job_loop(job), name=f"zestswap-job-{job.name}")

    async def _job_loop(self, job: Job) -> None:
        try:
            if job.run_on_start:
                await self.run_once(job.name)
            while self._running:
                await self._sleep(job.interval_seconds)
                state = self._state.get(job.name)
                if state is None:
                    return
                if state.paused:
                    continue
                await self.run_once(job.name)
        except asyncio.CancelledError:
            return

    async def run_once(self, name: str) -> bool:
        """Run one tick of ``name`` now. Returns False when the tick failed or the job is unknown."""
        job = self._jobs.get(name)
        state = self._state.get(name)
        if not job or not state:
            return False

        state.status = "running"
        state.last_started = datetime.now(timezone.utc)
        try:
            if self._tick_timeout:
                await asyncio.wait_for(job.func(), timeout=self._tick_timeout)
            else:
                await job.func()
            state.last_error = None
            state.consecutive_errors = 0
            return True
        except asyncio.TimeoutError:
            state.last_error = f"tick timed out after {self._tick_timeout}s"
            state.consecutive_errors += 1
            self.logger.warning("Job %s timed out", name)
            return False
        except Exception as exc:  # noqa: BLE001
            state.last_error = str(exc)
            state.consecutive_errors += 1
            self.logger.warning("Job %s tick failed: %s", name, exc, exc_info=True)
            return False
        finally:
            state.run_count += 1
            state.last_completed = datetime.now(timezone.utc)
            state.status = "idle"

    def pause_job(self, name: str) -> bool:
        state = self._state.get(name)
        if not state:
            return False
        state.paused = True
        return True

    def resume_job(self, name: str) -> bool:
        state = self._state.get(name)
        if not state:
            return False
        state.paused = False
        return True

    # ---------------------------
    # Introspection
    # ---------------------------
    def list_jobs(self) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for name, job in self._jobs.items():
            state = self._state.get(name) or JobState()
            items.append(
                {
                    "name": name,
                    "description": job.description,
                    "interval_seconds": job.interval_seconds,
                    "status": state.status,
                    "paused": state.paused,
                    "last_started": _iso(state.last_started),
                    "last_completed": _iso(state.last_completed),
                    "last_error": state.last_error,
                    "run_count": state.run_count,
                    "consecutive_errors": state.consecutive_errors,
                }
            )
        return items

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "started_at": _iso(self._started_at),
            "job_count": len(self._jobs),
            "jobs": self.list_jobs(),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.astimezone(timezone.utc).isoformat() if value else None
