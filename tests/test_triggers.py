"""Tests for the scheduler wiring and the command-line trigger."""

from datetime import date

import pytest

from src.errors import RunFatalError
from src.worker import trigger
from src.worker.reducer import RunSummary
from src.worker.scheduler import setup_scheduler
from src.worker.tasks import task_runner


def test_setup_scheduler_registers_jobs():
    scheduler = setup_scheduler()

    jobs = {job.id: job for job in scheduler.get_jobs()}

    assert set(jobs) == {"daily_price_reduction", "competitive_analysis", "attempt_retention"}
    cron = str(jobs["daily_price_reduction"].trigger)
    assert "hour='6,7'" in cron
    assert "minute='10'" in cron
    assert jobs["daily_price_reduction"].max_instances == 1


@pytest.mark.asyncio
async def test_cli_run_reports_summary(monkeypatch, capsys):
    calls = []

    async def fake_run_reductions(trigger, force, deadline_seconds):
        calls.append((trigger, force, deadline_seconds))
        return RunSummary(status="completed", run_date=date(2026, 3, 10), attempted=3, success=2, skip=1)

    async def fake_close():
        pass

    monkeypatch.setattr(task_runner, "run_reductions", fake_run_reductions)
    monkeypatch.setattr(task_runner, "close", fake_close)

    assert await trigger.run(force=True, deadline=30) == 0
    assert calls == [("cli", True, 30)]
    assert "status=completed" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_cli_run_fatal_exit_status(monkeypatch):
    async def fake_run_reductions(trigger, force, deadline_seconds):
        raise RunFatalError("cannot claim scheduler run")

    async def fake_close():
        pass

    monkeypatch.setattr(task_runner, "run_reductions", fake_run_reductions)
    monkeypatch.setattr(task_runner, "close", fake_close)

    assert await trigger.run() == 1


def test_cli_arguments():
    args = trigger.build_parser().parse_args(["--force", "--deadline", "120"])
    assert args.force is True
    assert args.deadline == 120.0
