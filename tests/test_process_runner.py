import logging
import os
import signal
import sys

import pytest

from dbagent.runtime.process_runner import ProcessRunner, start_process, stop_process
from dbagent.utils.diagnostics import ConfigurationError, SignalError, SpawnError

SLEEPER = [sys.executable, "-c", "import sys, time; print('ready', flush=True); sys.stderr.write('err line\\n'); sys.stderr.flush(); time.sleep(30)"]


@pytest.fixture
def handles():
    started = []
    yield started
    for handle in started:
        if handle.popen.poll() is None:
            handle.popen.kill()
            handle.popen.wait()
        handle.close()


def test_start_appends_output_to_log(tmp_path, handles, wait_until):
    log_path = tmp_path / "logs" / "database.log"
    log_path.parent.mkdir()
    log_path.write_text("previous run\n")

    handle = start_process("etcd", SLEEPER, log_path)
    handles.append(handle)

    assert handle.pid > 0
    assert wait_until(lambda: "err line" in log_path.read_text())
    content = log_path.read_text()
    assert content.startswith("previous run\n")
    assert "ready" in content


def test_start_runs_in_requested_directory(tmp_path, handles, wait_until):
    cwd = tmp_path / "zk"
    cwd.mkdir()
    log_path = tmp_path / "database.log"
    argv = [sys.executable, "-c", "import os, time; print(os.getcwd(), flush=True); time.sleep(30)"]

    handles.append(start_process("zookeeper", argv, log_path, cwd=cwd))

    assert wait_until(lambda: str(cwd) in log_path.read_text())


def test_stop_sends_sigterm_and_reaper_records_exit(tmp_path, handles, caplog):
    handle = start_process("etcd", SLEEPER, tmp_path / "database.log")
    handles.append(handle)

    with caplog.at_level(logging.INFO, logger="dbagent.runtime.process_runner"):
        assert stop_process(handle) is True
        assert handle.exited.result(timeout=5) == -signal.SIGTERM

    assert handle.has_exited()
    assert "exiting" in caplog.text


def test_stop_after_exit_is_not_an_error(tmp_path, handles):
    argv = [sys.executable, "-c", "pass"]
    handle = start_process("etcd", argv, tmp_path / "database.log")
    handles.append(handle)

    assert handle.exited.result(timeout=5) == 0
    assert stop_process(handle) is False


def test_nonzero_exit_is_logged_as_error(tmp_path, handles, caplog):
    argv = [sys.executable, "-c", "import sys; sys.exit(3)"]

    with caplog.at_level(logging.ERROR, logger="dbagent.runtime.process_runner"):
        handle = start_process("consul", argv, tmp_path / "database.log")
        handles.append(handle)
        assert handle.exited.result(timeout=5) == 3

    assert "exited with code 3" in caplog.text


def test_missing_executable_raises_spawn_error(tmp_path):
    with pytest.raises(SpawnError):
        start_process("etcd", [str(tmp_path / "no-such-binary")], tmp_path / "database.log")


def test_unwritable_log_raises_configuration_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    with pytest.raises(ConfigurationError):
        start_process("etcd", SLEEPER, blocker / "database.log")


def test_signal_refused_raises_signal_error(tmp_path, handles, monkeypatch):
    handle = start_process("etcd", SLEEPER, tmp_path / "database.log")
    handles.append(handle)

    def refuse(pid, sig):
        raise PermissionError(1, "Operation not permitted")

    monkeypatch.setattr(os, "kill", refuse)
    with pytest.raises(SignalError):
        stop_process(handle)
    monkeypatch.undo()

    assert not handle.has_exited()


def test_vanished_process_raises_signal_error(tmp_path, handles, monkeypatch):
    handle = start_process("etcd", SLEEPER, tmp_path / "database.log")
    handles.append(handle)

    def vanish(pid, sig):
        raise ProcessLookupError(3, "No such process")

    monkeypatch.setattr(os, "kill", vanish)
    with pytest.raises(SignalError):
        stop_process(handle)
    monkeypatch.undo()


def test_runner_flush_and_close(tmp_path, handles):
    runner = ProcessRunner()
    handle = runner.start("etcd", SLEEPER, tmp_path / "database.log")
    handles.append(handle)

    handle.flush()
    assert runner.stop(handle) is True
    handle.exited.result(timeout=5)
    handle.close()
    handle.flush()

    assert handle.log_file.closed
