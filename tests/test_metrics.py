from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from qwen35_rp.metrics import RequestCounters, StatusReporter


def test_counters_are_thread_safe() -> None:
    counters = RequestCounters()

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: counters.record_modified(), range(1000)))
        list(pool.map(lambda _: counters.record_proxied(), range(500)))

    assert counters.snapshot() == {
        "modified_requests_total": 1000,
        "proxied_requests_total": 500,
    }


def test_status_reporter_logs_counters(caplog: Any) -> None:
    counters = RequestCounters()
    counters.record_modified()
    counters.record_proxied()
    counters.record_proxied()
    reporter = StatusReporter(counters=counters, logger=logging.getLogger("uvicorn.error"))

    with caplog.at_level(logging.DEBUG):
        reporter.report_once()

    assert "proxy_status modified_requests=1 proxied_requests=2" in caplog.text


def test_status_reporter_start_and_stop_are_idempotent() -> None:
    reporter = StatusReporter(
        counters=RequestCounters(),
        logger=logging.getLogger("uvicorn.error"),
        interval_seconds=3600,
    )

    async def _exercise() -> None:
        await reporter.start()
        await reporter.start()
        await reporter.stop()
        await reporter.stop()

    asyncio.run(_exercise())
