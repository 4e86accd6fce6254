from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, List, Optional

from dbagent.utils.diagnostics import ConfigurationError, SignalError, SpawnError

logger = logging.getLogger(__name__)


def open_to_append(path: Path) -> IO[bytes]:
    path.parent.mkdir(parents=True, exist_ok=True)
    return open(path, "ab")


@dataclass
class ProcessHandle:
    """A spawned child process plus the log file its output goes to."""

    name: str
    argv: List[str]
    log_path: Path
    log_file: IO[bytes]
    popen: subprocess.Popen
    exited: Future = field(default_factory=Future)
    reaper: Optional[threading.Thread] = None

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def command_string(self) -> str:
        return " ".join(self.argv)

    def has_exited(self) -> bool:
        return self.exited.done() or self.popen.returncode is not None

    def flush(self) -> None:
        """Push buffered log output to disk without closing the file."""
        if self.log_file.closed:
            return
        self.log_file.flush()
        os.fsync(self.log_file.fileno())

    def close(self) -> None:
        if not self.log_file.closed:
            self.log_file.close()


def _reap(handle: ProcessHandle) -> None:
    returncode = handle.popen.wait()
    if returncode == 0 or returncode == -signal.SIGTERM:
        logger.info("exiting %r [PID: %d, code: %d]", handle.command_string, handle.pid, returncode)
    else:
        logger.error("process %r [PID: %d] exited with code %d", handle.command_string, handle.pid, returncode)
    handle.exited.set_result(returncode)


def start_process(
    name: str,
    argv: List[str],
    log_path: Path,
    cwd: Optional[Path] = None,
) -> ProcessHandle:
    """
    Spawn `argv` with stdout and stderr appended to `log_path`.

    Returns as soon as the OS has created the process; a reaper thread waits
    for it and resolves `handle.exited` with the exit code.
    """
    try:
        log_file = open_to_append(log_path)
    except OSError as exc:
        raise ConfigurationError(f"cannot open log file {log_path}: {exc}", operation="start") from exc

    command_string = " ".join(argv)
    logger.info("starting binary %r", command_string)
    try:
        popen = subprocess.Popen(
            argv,
            stdout=log_file,
            stderr=log_file,
            stdin=subprocess.DEVNULL,
            cwd=str(cwd) if cwd is not None else None,
        )
    except OSError as exc:
        log_file.close()
        raise SpawnError(f"failed to start {command_string!r}: {exc}", operation="start") from exc

    handle = ProcessHandle(name=name, argv=list(argv), log_path=log_path, log_file=log_file, popen=popen)
    handle.reaper = threading.Thread(target=_reap, args=(handle,), name=f"reap-{name}-{popen.pid}", daemon=True)
    handle.reaper.start()
    logger.info("started binary %r [PID: %d]", command_string, popen.pid)
    return handle


def stop_process(handle: ProcessHandle, sig: int = signal.SIGTERM) -> bool:
    """
    Send `sig` to the process and return once the OS accepted it.

    Returns False without signaling when the process was already reaped.
    Exit is observed asynchronously through `handle.exited`.
    """
    if handle.has_exited():
        logger.info("%s [PID: %d] already exited, nothing to signal", handle.name, handle.pid)
        return False

    logger.info("stopping binary %r [PID: %d]", handle.command_string, handle.pid)
    try:
        os.kill(handle.pid, sig)
    except ProcessLookupError as exc:
        if handle.has_exited():
            logger.info("%s [PID: %d] exited while being signaled", handle.name, handle.pid)
            return False
        raise SignalError(f"process {handle.pid} does not exist", operation="stop") from exc
    except PermissionError as exc:
        raise SignalError(f"not permitted to signal process {handle.pid}", operation="stop") from exc

    logger.info("stopped binary %r [PID: %d]", handle.name, handle.pid)
    return True


class ProcessRunner:
    """Seam over the start/stop primitives so the controller can be driven in tests."""

    def start(self, name: str, argv: List[str], log_path: Path, cwd: Optional[Path] = None) -> ProcessHandle:
        return start_process(name, argv, log_path, cwd=cwd)

    def stop(self, handle: ProcessHandle, sig: int = signal.SIGTERM) -> bool:
        return stop_process(handle, sig=sig)
