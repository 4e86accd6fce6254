from __future__ import annotations

import logging
import shutil
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from dbagent.core.context import AgentContext
from dbagent.core.engines import (
    EngineSpec,
    EtcdEngine,
    ZookeeperEngine,
    build_argv,
    build_engine,
    build_proxy_argv,
    render_zookeeper_config,
    required_executables,
)
from dbagent.core.models import Command, Operation, TransferResponse
from dbagent.runtime.monitor import MonitoringLoop, Sampler
from dbagent.runtime.process_runner import ProcessHandle, ProcessRunner
from dbagent.runtime.uploads import UploaderFactory, UploadPipeline, UploadPlan
from dbagent.storage.uploader import google_cloud_storage_factory
from dbagent.utils.diagnostics import ConfigurationError, SignalError, StateError

logger = logging.getLogger(__name__)


class AgentPhase(str, Enum):
    """Lifecycle of the supervised database on this node."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class ControllerState:
    """Mutable state owned by one AgentController; nothing else writes it."""

    phase: AgentPhase = AgentPhase.IDLE
    command: Optional[Command] = None
    engine: Optional[EngineSpec] = None
    primary: Optional[ProcessHandle] = None
    proxy: Optional[ProcessHandle] = None
    monitor: Optional[MonitoringLoop] = None
    retired_monitors: List[MonitoringLoop] = field(default_factory=list)


def reset_directory(path: Path) -> None:
    """Remove `path` if present and recreate it empty."""
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


class AgentController:
    """
    Interprets Transfer commands and drives the process runner, the
    monitoring loop and the upload pipeline for one node.
    """

    def __init__(
        self,
        context: AgentContext,
        uploader_factory: UploaderFactory = google_cloud_storage_factory,
        runner: Optional[ProcessRunner] = None,
        pipeline: Optional[UploadPipeline] = None,
        sampler_factory: Optional[Callable[[int], Sampler]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.context = context
        self.paths = context.resolved_paths()
        self.runner = runner or ProcessRunner()
        self.pipeline = pipeline or UploadPipeline(
            uploader_factory,
            attempts=context.lifecycle.upload_attempts,
            backoff_seconds=context.lifecycle.upload_backoff_seconds,
        )
        self.sampler_factory = sampler_factory
        self.sleep = sleep
        self.state = ControllerState()
        self.last_upload: Optional[Future] = None

    @property
    def phase(self) -> AgentPhase:
        return self.state.phase

    @property
    def primary_pid(self) -> Optional[int]:
        return self.state.primary.pid if self.state.primary is not None else None

    @property
    def proxy_pid(self) -> Optional[int]:
        return self.state.proxy.pid if self.state.proxy is not None else None

    def transfer(self, command: Command) -> TransferResponse:
        """Handle one inbound command; synchronous failures raise AgentError subclasses."""
        if command.operation == Operation.START:
            logger.info("received Transfer request (operation=%s, database=%s)", command.operation.value, command.database.value)
        else:
            logger.info("received Transfer request (operation=%s)", command.operation.value)

        if command.operation == Operation.START:
            self._start(command)
        elif command.operation == Operation.STOP:
            self._stop()
        elif command.operation == Operation.UPLOAD_LOG:
            self._upload_log(command)
        else:
            raise StateError(f"operation {command.operation!r} is not implemented")

        logger.info("transfer success")
        return TransferResponse(success=True)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Interrupt monitoring without a final upload and join the loops."""
        monitors = list(self.state.retired_monitors)
        if self.state.monitor is not None:
            monitors.append(self.state.monitor)

        for monitor in monitors:
            monitor.interrupt()
        for monitor in monitors:
            if not monitor.join(timeout):
                logger.warning("monitoring loop for PID %d did not exit in time", monitor.pid)

    def _start(self, command: Command) -> None:
        if self.state.phase == AgentPhase.RUNNING or self.state.primary is not None:
            raise StateError("a database is already running; stop it first", operation="start")

        paths = self.paths
        logger.info("working_directory: %s", paths.working_directory)
        logger.info("database_log_path: %s", paths.database_log)
        logger.info("monitor_log_path: %s", paths.monitor_log)

        engine = build_engine(command, self.context, paths)
        for executable in required_executables(engine):
            if not Path(executable).exists():
                raise ConfigurationError(f"{command.database.value} binary {executable!r} does not exist", operation="start")

        self._write_key(command, operation="start")
        self._prepare_engine(engine)

        cwd = engine.working_dir if isinstance(engine, ZookeeperEngine) else None
        primary = self.runner.start(command.database.value, build_argv(engine), paths.database_log, cwd=cwd)
        # No rollback on later failures: the primary stays tracked so a stop can still reach it.
        self.state.command = command
        self.state.engine = engine
        self.state.primary = primary
        self.state.proxy = None

        if isinstance(engine, EtcdEngine) and engine.proxy is not None:
            self.state.proxy = self.runner.start(
                engine.proxy.name,
                build_proxy_argv(engine.proxy),
                paths.proxy_log(engine.proxy.name),
            )

        sampler = self.sampler_factory(primary.pid) if self.sampler_factory is not None else None
        monitor = MonitoringLoop(
            pid=primary.pid,
            table_path=paths.monitor_log,
            pipeline=self.pipeline,
            interval_seconds=self.context.lifecycle.monitor_interval_seconds,
            sampler=sampler,
        )
        monitor.start()
        self.state.monitor = monitor
        self.state.phase = AgentPhase.RUNNING

    def _stop(self) -> None:
        primary = self.state.primary
        if primary is None:
            raise StateError("no database process is running", operation="stop")

        # wait a few more seconds to collect more monitoring data
        self.sleep(self.context.lifecycle.stop_grace_seconds)

        signal_error: Optional[SignalError] = None
        try:
            self.runner.stop(primary)
        except SignalError as exc:
            logger.error("stopping %s failed (%s)", primary.name, exc)
            signal_error = exc
        primary.close()

        proxy = self.state.proxy
        if proxy is not None:
            try:
                self.runner.stop(proxy)
            except SignalError as exc:
                logger.error("stopping proxy %s failed (%s)", proxy.name, exc)
                signal_error = signal_error or exc
            proxy.close()

        self.state.primary = None
        self.state.proxy = None
        self.state.phase = AgentPhase.STOPPED

        monitor = self.state.monitor
        self.state.monitor = None
        if monitor is None:
            logger.warning("no monitoring loop is active, skipping upload")
        else:
            self.state.retired_monitors = [m for m in self.state.retired_monitors if m.is_alive()]
            self.state.retired_monitors.append(monitor)
            self.last_upload = monitor.request(Operation.STOP, self._upload_plan())

        if signal_error is not None:
            raise signal_error

    def _upload_log(self, command: Command) -> None:
        primary = self.state.primary
        if primary is None or self.state.command is None:
            raise StateError("no database process is running", operation="upload_log")

        self.state.command = self.state.command.merge_destination(command)
        self._write_key(self.state.command, operation="upload_log")

        # wait a few more seconds to collect more monitoring data
        self.sleep(self.context.lifecycle.stop_grace_seconds)

        logger.info("just uploading logs without stopping %s [PID: %d]", self.state.command.database.value, primary.pid)
        primary.flush()
        if self.state.proxy is not None:
            self.state.proxy.flush()

        if self.state.monitor is None:
            logger.warning("no monitoring loop is active, skipping upload")
            return
        self.last_upload = self.state.monitor.request(Operation.UPLOAD_LOG, self._upload_plan())

    def _upload_plan(self) -> UploadPlan:
        command = self.state.command
        proxy_log = None
        if command.database.uses_proxy:
            proxy_log = self.paths.proxy_log(command.database.value)

        return UploadPlan(
            bucket=command.google_cloud_storage_bucket_name,
            project=command.google_cloud_project_name,
            key=command.google_cloud_storage_key,
            sub_directory=command.google_cloud_storage_sub_directory,
            test_name=command.test_name,
            server_index=command.server_index,
            database_log=self.paths.database_log,
            monitor_log=self.paths.monitor_log,
            agent_log=self.paths.agent_log,
            proxy_log=proxy_log,
        )

    def _write_key(self, command: Command, operation: Optional[str] = None) -> None:
        if not command.google_cloud_storage_key:
            return
        try:
            self.paths.gcloud_key.parent.mkdir(parents=True, exist_ok=True)
            self.paths.gcloud_key.write_text(command.google_cloud_storage_key, encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(
                f"cannot write key file {self.paths.gcloud_key}: {exc}",
                operation=operation,
            ) from exc

    def _prepare_engine(self, engine: EngineSpec) -> None:
        """Fresh data directory for every start; ZooKeeper also gets myid and its config."""
        try:
            if isinstance(engine, ZookeeperEngine):
                if not engine.working_dir.is_dir():
                    raise ConfigurationError(
                        f"zookeeper working directory {engine.working_dir} does not exist",
                        operation="start",
                    )
                logger.info("resetting zookeeper data directory %s", engine.data_dir)
                reset_directory(engine.data_dir)

                id_path = engine.data_dir / "myid"
                logger.info("writing zk myid file %d in %s", engine.my_id, id_path)
                id_path.write_text(str(engine.my_id), encoding="utf-8")

                rendered = render_zookeeper_config(engine.config)
                logger.info("writing zk config file %s", engine.config_path)
                engine.config_path.write_text(rendered, encoding="utf-8")
            else:
                logger.info("resetting data directory %s", engine.data_dir)
                reset_directory(engine.data_dir)
        except OSError as exc:
            raise ConfigurationError(f"cannot prepare data directory: {exc}", operation="start") from exc
