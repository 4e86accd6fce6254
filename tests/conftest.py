import stat
import sys
import time
from pathlib import Path

import pytest

# Ensure src/ is in the python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from dbagent.core.context import AgentContext
from dbagent.core.models import AgentSettings, BinarySettings, LifecycleSettings

FAKE_ENGINE_SCRIPT = """#!/bin/sh
echo "cwd: $(pwd)"
echo "argv: $@"
exec sleep 30
"""


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll `predicate` until it is truthy or `timeout` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def fake_binaries(tmp_path):
    """Executable stand-ins for every engine; each logs its cwd/argv and sleeps."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    binaries = {}
    for name in ("etcd", "zetcd", "cetcd", "consul", "java"):
        script = bin_dir / name
        script.write_text(FAKE_ENGINE_SCRIPT)
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        binaries[name] = str(script)
    return binaries


@pytest.fixture
def working_dir(tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    (work / "agent.log").write_text("agent started\n")
    return work


@pytest.fixture
def agent_context(working_dir, fake_binaries):
    return AgentContext(
        settings=AgentSettings(working_directory=str(working_dir)),
        binaries=BinarySettings(**fake_binaries),
        lifecycle=LifecycleSettings(
            stop_grace_seconds=3.0,
            monitor_interval_seconds=0.05,
            upload_attempts=2,
            upload_backoff_seconds=0,
        ),
    )


@pytest.fixture
def wait_until():
    return wait_for
