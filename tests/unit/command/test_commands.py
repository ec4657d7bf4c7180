"""Tests for the read-only and cleanup subcommands."""

from types import SimpleNamespace

from conftest import Script, ScriptedRuntime

from forkcat.command import CleanupCommand, ListCommand, StatusCommand


async def finished(make_orchestrator):
    orchestrator = make_orchestrator(
        ScriptedRuntime(scripts={2: Script(exit_code=4)}),
        branches=2, strategies=["careful", "fast"],
    )
    exploration = await orchestrator.start_exploration("add a health endpoint")
    return exploration, SimpleNamespace(config=orchestrator.config)


async def test_list(make_orchestrator, capsys):
    exploration, state = await finished(make_orchestrator)

    assert await ListCommand().execute(state) == 0

    out = capsys.readouterr().out
    assert exploration.id in out
    assert "1/2 done" in out
    assert "winner=1" in out


async def test_list_empty(make_config, capsys):
    state = SimpleNamespace(config=make_config())

    assert await ListCommand(status="running").execute(state) == 0
    assert "No explorations found" in capsys.readouterr().out


async def test_status(make_orchestrator, capsys):
    exploration, state = await finished(make_orchestrator)

    assert await StatusCommand(exploration_id=exploration.id).execute(state) == 0

    out = capsys.readouterr().out
    assert f"{exploration.id}: completed (parallel, 2 attempts)" in out
    assert "[careful]" in out
    assert "(exit code 4)" in out
    assert "Winner: attempt 1" in out


async def test_unknown_exploration_exits_nonzero(make_config):
    state = SimpleNamespace(config=make_config())

    assert await StatusCommand(exploration_id="exp-missing").run_workflow(state) == 1


async def test_cleanup_needs_a_selection(make_config, capsys):
    state = SimpleNamespace(config=make_config())

    assert await CleanupCommand().execute(state) == 1
    assert "Nothing selected" in capsys.readouterr().out


async def test_cleanup_all(make_orchestrator, capsys):
    exploration, state = await finished(make_orchestrator)

    assert await CleanupCommand(all=True).execute(state) == 0

    assert "Cleaned 1 exploration(s): 1 worktrees, 1 branches" in capsys.readouterr().out


async def test_status_shows_skipped_attempts(make_orchestrator, capsys):
    orchestrator = make_orchestrator(ScriptedRuntime(), branches=2, mode="sequential")
    exploration = await orchestrator.start_exploration("add a health endpoint")
    state = SimpleNamespace(config=orchestrator.config)

    assert await StatusCommand(exploration_id=exploration.id).execute(state) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[2].startswith("  #1 completed")
    assert lines[3].startswith("  #2 skipped")
    assert "pending" not in lines[3]
