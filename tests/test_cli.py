import pytest

from leadscout import cli
from tests.conftest import chrome_cmd

FOREIGN_HEADLESS = "/opt/google/chrome/chrome --headless --remote-debugging-port=9222"


def test_parse_args_defaults_to_status():
    assert cli.parse_args([]).command == "status"
    args = cli.parse_args(["--debug", "kill", "--job-id", "job-1"])
    assert args.debug and args.command == "kill" and args.job_id == "job-1"
    assert cli.parse_args(["kill-all", "--yes"]).yes is True


@pytest.mark.asyncio
async def test_status_lists_running_scraper_processes(tracker, backend):
    backend.add(101, chrome_cmd(tracker, "job-1"))
    backend.add(900, FOREIGN_HEADLESS)
    lines = []

    assert await cli.show_status(tracker, out=lines.append) == 0

    assert "Running scraper processes: 1" in lines[0]
    assert any(line.strip().startswith("101") for line in lines[1:])
    assert lines[-1].startswith("To kill these processes")


@pytest.mark.asyncio
async def test_kill_without_job_id_only_touches_tagged_processes(tracker, backend):
    backend.add(101, chrome_cmd(tracker, "job-1"))
    backend.add(201, chrome_cmd(tracker, "job-2"))
    backend.add(900, FOREIGN_HEADLESS)
    lines = []

    assert await cli.kill_scraper(tracker, out=lines.append) == 0

    assert sorted(backend.killed) == [101, 201]
    assert 900 in backend.procs
    assert "   Killed: 2" in lines


@pytest.mark.asyncio
async def test_kill_with_nothing_running(tracker):
    lines = []
    assert await cli.kill_scraper(tracker, out=lines.append) == 0
    assert lines == ["No scraper processes found running."]


@pytest.mark.asyncio
async def test_kill_by_job_id(tracker, backend):
    backend.add(101, chrome_cmd(tracker, "job-1"))
    backend.add(201, chrome_cmd(tracker, "job-2"))
    lines = []

    await cli.kill_scraper(tracker, "job-1", out=lines.append)

    assert backend.killed == [101]
    assert "   PIDs: 101" in lines


@pytest.mark.asyncio
@pytest.mark.parametrize("answer", ["no", "", "y"])
async def test_kill_all_needs_an_explicit_yes(tracker, backend, answer):
    backend.add(900, FOREIGN_HEADLESS)
    lines = []

    code = await cli.kill_all(tracker, ask=lambda _prompt: answer, out=lines.append)

    assert code == 0
    assert backend.killed == []
    assert lines[-1] == "Cancelled."


@pytest.mark.asyncio
async def test_kill_all_on_closed_stdin_is_cancelled(tracker, backend):
    backend.add(900, FOREIGN_HEADLESS)

    def eof(_prompt):
        raise EOFError

    assert await cli.kill_all(tracker, ask=eof, out=lambda _line: None) == 0
    assert backend.killed == []


@pytest.mark.asyncio
async def test_kill_all_with_yes_kills_every_headless_browser(tracker, backend):
    backend.add(101, chrome_cmd(tracker, "job-1"))
    backend.add(900, FOREIGN_HEADLESS)
    backend.add(901, "/usr/bin/vim notes.txt")

    def never(_prompt):
        raise AssertionError("should not ask")

    await cli.kill_all(tracker, assume_yes=True, ask=never, out=lambda _line: None)

    assert sorted(backend.killed) == [101, 900]


@pytest.mark.asyncio
async def test_run_dispatches_to_status(tracker, backend, capsys):
    assert await cli.run(cli.parse_args(["status"]), tracker=tracker) == 0
    assert "Registered PIDs: 0" in capsys.readouterr().out


def test_main_reports_internal_errors(monkeypatch):
    async def boom(args, tracker=None):
        raise RuntimeError("ps missing")

    monkeypatch.setattr(cli, "run", boom)
    assert cli.main(["status"]) == 1
