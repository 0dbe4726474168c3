"""Tests for the drain scheduler loop and the worker CLI."""

import json
import threading
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

import pytest

from larkbot.config import AppConfig, SchedulerConfig
from larkbot.models import ProcessResult
from larkbot.scheduler import run_scheduler_loop, start_scheduler_thread
from larkbot.worker import main as worker_main
from larkbot.worker import parse_args, run_worker


def test_scheduler_drains_one_job_per_tick() -> None:
    """Each tick calls process_next once, then sleeps the interval."""
    orchestrator = MagicMock()
    orchestrator.process_next.return_value = ProcessResult("job-1", "completed")
    sleep = Mock(side_effect=[None, StopIteration("two ticks")])
    with pytest.raises(StopIteration, match="two ticks"):
        run_scheduler_loop(orchestrator, interval_seconds=30, sleep=sleep)
    assert orchestrator.process_next.call_count == 2
    sleep.assert_called_with(30)


def test_scheduler_survives_tick_errors() -> None:
    """An exception in one tick is logged and the loop keeps going."""
    orchestrator = MagicMock()
    orchestrator.process_next.side_effect = [RuntimeError("store down"), ProcessResult()]
    stop = threading.Event()
    calls = []

    def sleep(seconds: float) -> None:
        calls.append(seconds)
        if len(calls) == 2:
            stop.set()

    run_scheduler_loop(orchestrator, interval_seconds=5, stop=stop, sleep=sleep)
    assert orchestrator.process_next.call_count == 2
    assert calls == [5, 5]


def test_scheduler_stops_when_event_set() -> None:
    orchestrator = MagicMock()
    stop = threading.Event()
    stop.set()
    run_scheduler_loop(orchestrator, stop=stop, sleep=Mock())
    orchestrator.process_next.assert_not_called()


def test_start_scheduler_thread_uses_config_interval() -> None:
    """The daemon thread runs the loop with scheduler.interval_seconds."""
    config = AppConfig(scheduler=SchedulerConfig(interval_seconds=15))
    with patch("larkbot.scheduler.threading.Thread") as thread_cls:
        start_scheduler_thread(config, MagicMock())
    kwargs = thread_cls.call_args.kwargs
    assert kwargs["daemon"] is True
    assert kwargs["kwargs"]["interval_seconds"] == 15
    thread_cls.return_value.start.assert_called_once()


def test_run_worker_once_returns_result() -> None:
    orchestrator = MagicMock()
    orchestrator.process_next.return_value = ProcessResult()
    result = run_worker(orchestrator, once=True)
    assert result.no_jobs
    orchestrator.process_next.assert_called_once()


def test_run_worker_polls_when_empty() -> None:
    """Without --once the worker sleeps only when the queue is empty."""
    orchestrator = MagicMock()
    orchestrator.process_next.side_effect = [ProcessResult("a", "completed"), ProcessResult(), ProcessResult("b", "failed")]
    sleep = Mock()
    assert run_worker(orchestrator, poll_interval=7, sleep=sleep, max_iterations=3) is None
    sleep.assert_called_once_with(7)


def test_worker_parse_args_defaults() -> None:
    args = parse_args([])
    assert args.config == Path("config.yaml")
    assert not args.once
    assert args.job_id is None
    assert args.poll_interval == 10


def test_worker_check_prints_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cfg = tmp_path / "config.yaml"
    cfg.write_text("bot:\n  default_repo_url: https://github.com/acme/app\n", encoding="utf-8")
    assert worker_main(["--config", str(cfg), "--check"]) == 0
    assert "https://github.com/acme/app" in capsys.readouterr().out


def test_worker_once_prints_result(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """--once drains one job and prints the drain result as JSON."""
    orchestrator = MagicMock()
    orchestrator.process_next.return_value = ProcessResult("job-1", "completed")
    with patch("larkbot.worker.make_orchestrator", return_value=orchestrator):
        with patch("larkbot.worker.BotLogging"):
            assert worker_main(["--config", str(tmp_path / "missing.yaml"), "--once"]) == 0
    assert json.loads(capsys.readouterr().out) == {"status": "success", "job_id": "job-1", "outcome": "completed"}


def test_worker_job_id_not_processable(tmp_path: Path) -> None:
    orchestrator = MagicMock()
    orchestrator.process_specific.return_value = None
    with patch("larkbot.worker.make_orchestrator", return_value=orchestrator):
        with patch("larkbot.worker.BotLogging"):
            assert worker_main(["--config", str(tmp_path / "missing.yaml"), "--job-id", "nope"]) == 1
    orchestrator.process_specific.assert_called_once_with("nope")
