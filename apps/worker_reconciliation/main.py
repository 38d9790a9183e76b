"""
Worker Reconciliation.

Назначение:
- раз в RECONCILIATION_INTERVAL_SEC вызывать reconciliation_job.run()
- истечение запросов, финализация grace-окон и просроченных встреч
- --once: один тик и выход (cron / ручной прогон)

Несколько реплик воркера безопасны: каждая встреча переводится
условным UPDATE, проигравшая реплика просто пропускает её.
"""

from __future__ import annotations

import argparse
import signal
import time

from counseling_engine.common.config import get_settings
from counseling_engine.common.logging import get_project_logger, setup_logging
from counseling_engine.jobs.reconciliation_job import run as run_reconciliation

log = get_project_logger()

_stop = False


def _request_stop(signum, _frame) -> None:
    global _stop
    _stop = True
    log.info("worker_reconciliation_stop_requested", extra={"payload": {"signal": signum}})


def _tick(limit: int) -> bool:
    try:
        run_reconciliation(limit=limit, source="worker")
        return True
    except Exception as e:
        log.error(
            "worker_reconciliation_error",
            extra={"payload": {"err": str(e)[:300]}},
        )
        return False


def _sleep(interval_sec: int) -> None:
    # Короткие шаги, чтобы SIGTERM не ждал полный интервал
    deadline = time.monotonic() + interval_sec
    while not _stop and time.monotonic() < deadline:
        time.sleep(min(1.0, max(0.0, deadline - time.monotonic())))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Counseling meetings reconciler")
    parser.add_argument("--once", action="store_true", help="один тик и выход")
    args = parser.parse_args(argv)

    setup_logging()
    settings = get_settings()
    interval_sec = max(5, int(settings.reconciliation_interval_sec))
    limit = int(settings.reconciliation_limit)

    log.info(
        "worker_reconciliation_started",
        extra={
            "payload": {
                "enabled": bool(settings.reconciliation_enabled),
                "interval_sec": interval_sec,
                "limit": limit,
                "once": bool(args.once),
            }
        },
    )

    if args.once:
        return 0 if _tick(limit) else 1

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)
    while not _stop:
        # Пропущенный тик догоняется следующим запуском
        _tick(limit)
        _sleep(interval_sec)

    log.info("worker_reconciliation_stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
