import asyncio

import pytest

from solscout import cli


def test_run_arguments():
    args = cli._build_parser().parse_args(
        ["--log-level", "debug", "run", "--criteria", "new_token", "--sources", "polling,boost", "--stagger", "0"]
    )
    assert args.command == "run"
    assert args.criteria == "new_token"
    assert args.sources == "polling,boost"
    assert args.stagger == 0.0
    assert args.json_logs is None
    assert not args.diagnostics


def test_unknown_preset_is_rejected():
    with pytest.raises(SystemExit):
        cli._build_parser().parse_args(["run", "--criteria", "yolo"])


def test_command_is_required():
    with pytest.raises(SystemExit):
        cli._build_parser().parse_args([])


def test_main_reports_invalid_config(tmp_path, monkeypatch):
    path = tmp_path / "bad.toml"
    path.write_text('[detection]\nenabled_sources = ["mempool"]\n')
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)
    assert cli.main(["--config", str(path), "health"]) == 2


def test_print_candidates_emits_json_lines(capsys, make_record):
    cli._print_candidates([make_record(), make_record(name="Other")])
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 2
    assert '"name": "Other"' in lines[1]


class _SlowCoordinator:
    def __init__(self, startup=3600.0, fail=None):
        self.startup = startup
        self.fail = fail
        self.started = False
        self.stopped = False
        self.start_cancelled = False

    async def start(self):
        if self.fail is not None:
            raise self.fail
        try:
            await asyncio.sleep(self.startup)
        except asyncio.CancelledError:
            self.start_cancelled = True
            raise
        self.started = True

    async def stop(self):
        self.stopped = True


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio
async def test_stop_interrupts_slow_startup():
    coordinator = _SlowCoordinator()
    stop = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, stop.set)

    await asyncio.wait_for(cli._serve_until(coordinator, stop), timeout=2)

    assert coordinator.start_cancelled
    assert coordinator.stopped
    assert not coordinator.started


@pytest.mark.anyio
async def test_runs_until_stop_after_startup():
    coordinator = _SlowCoordinator(startup=0)
    stop = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, stop.set)

    await asyncio.wait_for(cli._serve_until(coordinator, stop), timeout=2)

    assert coordinator.started
    assert coordinator.stopped


@pytest.mark.anyio
async def test_startup_failure_propagates_and_stops():
    coordinator = _SlowCoordinator(fail=ConnectionError("rpc down"))
    with pytest.raises(ConnectionError, match="rpc down"):
        await cli._serve_until(coordinator, asyncio.Event())
    assert coordinator.stopped
