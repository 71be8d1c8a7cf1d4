import io
import threading
from pathlib import Path

import pytest

from gridci.artifacts import MemoryArtifactStore
from gridci.cache import MemoryCacheStore
from gridci.executor import CommandResult, CommandRunner, JobExecutor
from gridci.ui.console import Console, set_console


class FakeRunner(CommandRunner):
    """
    Scripted CommandRunner.

    `script` maps a command string to an exit code, a CommandResult, or a
    callable(command, env, cwd) returning either. Anything unscripted exits 0.
    Every call is recorded in `calls` as (command, env, cwd, timeout).
    """

    def __init__(self, script=None):
        self.script = dict(script or {})
        self.calls = []
        self._lock = threading.Lock()

    def run(self, command, *, env, cwd, timeout=None):
        with self._lock:
            self.calls.append((command, dict(env), Path(cwd), timeout))
        outcome = self.script.get(command, 0)
        if callable(outcome):
            outcome = outcome(command, env, cwd)
        if isinstance(outcome, CommandResult):
            return outcome
        return CommandResult(exit_code=outcome)

    @property
    def commands(self):
        return [c[0] for c in self.calls]


@pytest.fixture(autouse=True)
def console():
    """Capture console output per test instead of printing to the real stdout."""
    out = io.StringIO()
    err = io.StringIO()
    c = Console(stream=out, err_stream=err)
    set_console(c)
    yield c
    set_console(Console())


@pytest.fixture
def console_text(console):
    def read():
        return console._stream.getvalue() + console._err_stream.getvalue()
    return read


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def cache_store():
    return MemoryCacheStore()


@pytest.fixture
def artifact_store():
    return MemoryArtifactStore()


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def make_executor(workspace, fake_runner, cache_store):
    """Build a JobExecutor wired to in-memory stores and the fake runner."""
    from gridci.artifacts import ArtifactPublisher

    def factory(runner=None, artifacts=None, **kwargs):
        kwargs.setdefault("run_context", {"event": "push", "sha": "abc123", "ref": "main", "channel": "stable"})
        return JobExecutor(
            workspace=workspace,
            runner=runner or fake_runner,
            cache=cache_store,
            publisher=ArtifactPublisher(artifacts) if artifacts is not None else None,
            **kwargs,
        )

    return factory
