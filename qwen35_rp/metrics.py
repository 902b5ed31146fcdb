from __future__ import annotations

import asyncio
import logging
from threading import Lock


class RequestCounters:
    def __init__(self) -> None:
        self._lock = Lock()
        self._modified_requests_total = 0
        self._proxied_requests_total = 0

    def record_modified(self) -> int:
        with self._lock:
            self._modified_requests_total += 1
            return self._modified_requests_total

    def record_proxied(self) -> int:
        with self._lock:
            self._proxied_requests_total += 1
            return self._proxied_requests_total

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "modified_requests_total": self._modified_requests_total,
                "proxied_requests_total": self._proxied_requests_total,
            }


class StatusReporter:
    def __init__(
        self,
        *,
        counters: RequestCounters,
        logger: logging.Logger,
        interval_seconds: float = 60.0,
    ) -> None:
        self._counters = counters
        self._logger = logger
        self._interval_seconds = max(1.0, float(interval_seconds))
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="proxy-status-reporter")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    def report_once(self) -> None:
        snapshot = self._counters.snapshot()
        self._logger.info(
            "proxy_status modified_requests=%d proxied_requests=%d",
            snapshot["modified_requests_total"],
            snapshot["proxied_requests_total"],
        )

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            self.report_once()
