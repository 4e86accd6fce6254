from __future__ import annotations

import csv
import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import psutil

from dbagent.core.models import Operation
from dbagent.runtime.uploads import UploadPipeline, UploadPlan, UploadReport

logger = logging.getLogger(__name__)

MONITOR_COLUMNS = [
    "unix_ts",
    "pid",
    "ppid",
    "name",
    "status",
    "cpu_percent",
    "memory_percent",
    "rss_bytes",
    "vms_bytes",
    "num_threads",
    "num_fds",
    "read_count",
    "write_count",
    "read_bytes",
    "write_bytes",
]


class Sampler(Protocol):
    def sample(self) -> Dict[str, Any]:
        ...


class ProcessSampler:
    """Reads psutil counters for one pid."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self._process: Optional[psutil.Process] = None

    def sample(self) -> Dict[str, Any]:
        # cpu_percent is measured against the previous call on the same Process object.
        if self._process is None:
            self._process = psutil.Process(self.pid)
        proc = self._process

        with proc.oneshot():
            memory = proc.memory_info()
            try:
                io = proc.io_counters()
            except (psutil.AccessDenied, AttributeError):
                io = None
            try:
                num_fds = proc.num_fds()
            except (psutil.AccessDenied, AttributeError):
                num_fds = None

            return {
                "unix_ts": int(time.time()),
                "pid": proc.pid,
                "ppid": proc.ppid(),
                "name": proc.name(),
                "status": proc.status(),
                "cpu_percent": proc.cpu_percent(interval=None),
                "memory_percent": round(proc.memory_percent(), 4),
                "rss_bytes": memory.rss,
                "vms_bytes": memory.vms,
                "num_threads": proc.num_threads(),
                "num_fds": num_fds,
                "read_count": getattr(io, "read_count", None),
                "write_count": getattr(io, "write_count", None),
                "read_bytes": getattr(io, "read_bytes", None),
                "write_bytes": getattr(io, "write_bytes", None),
            }


def append_row(table_path: Path, row: Dict[str, Any]) -> None:
    """Append one record, writing the header first when the table is new or empty."""
    table_path.parent.mkdir(parents=True, exist_ok=True)
    write_header = not table_path.exists() or table_path.stat().st_size == 0
    with open(table_path, "a", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=MONITOR_COLUMNS, extrasaction="ignore")
        if write_header:
            writer.writeheader()
        writer.writerow(row)


@dataclass(frozen=True)
class UploadRequest:
    operation: Operation
    plan: UploadPlan
    future: Future


_INTERRUPT = object()


class MonitoringLoop:
    """
    Samples one pid on a fixed interval and runs upload passes on request.

    An `upload_log` request runs one pass and keeps sampling; a `stop` request
    runs one pass and ends the loop. `interrupt()` ends it without uploading.
    """

    def __init__(
        self,
        pid: int,
        table_path: Path,
        pipeline: UploadPipeline,
        interval_seconds: float = 1.0,
        sampler: Optional[Sampler] = None,
    ) -> None:
        self.pid = pid
        self.table_path = table_path
        self.pipeline = pipeline
        self.interval_seconds = interval_seconds
        self.sampler = sampler or ProcessSampler(pid)
        self.samples_written = 0

        self._requests: "queue.Queue[Any]" = queue.Queue()
        self._interrupted = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=f"monitor-{self.pid}", daemon=True)
        self._thread.start()

    def request(self, operation: Operation, plan: UploadPlan) -> Future:
        """Queue one upload pass; the returned future resolves with its UploadReport."""
        future: Future = Future()
        if self._thread is not None and not self._thread.is_alive():
            logger.error("monitoring for PID %d already ended, %s upload pass skipped", self.pid, operation.value)
            future.cancel()
            return future
        self._requests.put(UploadRequest(operation=operation, plan=plan, future=future))
        return future

    def interrupt(self) -> None:
        self._interrupted.set()
        self._requests.put(_INTERRUPT)

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sample_once(self) -> bool:
        try:
            row = self.sampler.sample()
            append_row(self.table_path, row)
        except (psutil.Error, OSError) as exc:
            logger.error("monitoring error for PID %d (%s)", self.pid, exc)
            return False
        self.samples_written += 1
        return True

    def _run_pass(self, request: UploadRequest) -> None:
        if not request.future.set_running_or_notify_cancel():
            return
        try:
            report: UploadReport = self.pipeline.run(request.plan)
        except Exception as exc:
            logger.exception("upload pass failed")
            request.future.set_exception(exc)
            return
        request.future.set_result(report)

    def _run(self) -> None:
        logger.info("saving monitoring results for PID %d in %s", self.pid, self.table_path)
        self.sample_once()

        while not self._interrupted.is_set():
            try:
                item = self._requests.get(timeout=self.interval_seconds)
            except queue.Empty:
                self.sample_once()
                continue

            if item is _INTERRUPT or self._interrupted.is_set():
                if isinstance(item, UploadRequest):
                    item.future.cancel()
                break

            logger.info("stopped monitoring, running %s upload pass", item.operation.value)
            self._run_pass(item)
            if item.operation == Operation.STOP:
                logger.info("monitoring for PID %d finished", self.pid)
                break

        if self._interrupted.is_set():
            logger.info("interrupt received, monitoring for PID %d exits without upload", self.pid)
        self._cancel_pending()

    def _cancel_pending(self) -> None:
        while True:
            try:
                item = self._requests.get_nowait()
            except queue.Empty:
                return
            if isinstance(item, UploadRequest):
                item.future.cancel()
