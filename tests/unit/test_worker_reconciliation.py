from __future__ import annotations

from apps.worker_reconciliation import main as worker


def test_worker_once_runs_single_tick(monkeypatch) -> None:
    calls: list[dict] = []
    monkeypatch.setattr(worker, "run_reconciliation", lambda **kw: calls.append(kw))

    assert worker.main(["--once"]) == 0
    assert len(calls) == 1
    assert calls[0]["source"] == "worker"


def test_worker_once_reports_failure(monkeypatch) -> None:
    def _boom(**_kw):
        raise RuntimeError("db down")

    monkeypatch.setattr(worker, "run_reconciliation", _boom)

    assert worker.main(["--once"]) == 1
