from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from dbagent.storage.uploader import Uploader, join_object_path

logger = logging.getLogger(__name__)

UploaderFactory = Callable[[Union[str, bytes], str], Uploader]


def destination_name(test_name: str, server_index: int, src: Union[str, Path], sub_directory: str = "") -> str:
    """
    Remote object name for an artifact.

    `{test_name}-{server_index+1}-{basename}` unless the basename already
    carries the test name, placed under `sub_directory`.
    """
    base = Path(src).name
    if not base.startswith(test_name):
        base = f"{test_name}-{server_index + 1}-{base}"
    return join_object_path(sub_directory, base)


@dataclass(frozen=True)
class Artifact:
    label: str
    path: Path
    destination: str


@dataclass(frozen=True)
class UploadPlan:
    """Immutable snapshot of everything one upload pass needs."""

    bucket: str
    project: str
    key: str
    sub_directory: str
    test_name: str
    server_index: int
    database_log: Path
    monitor_log: Path
    agent_log: Path
    proxy_log: Optional[Path] = None

    def destination(self, path: Path) -> str:
        return destination_name(self.test_name, self.server_index, path, self.sub_directory)

    def artifacts(self) -> List[Artifact]:
        """Artifacts in upload order; an expected proxy log that is missing is skipped."""
        artifacts = [Artifact("database log", self.database_log, self.destination(self.database_log))]

        if self.proxy_log is not None:
            if self.proxy_log.exists():
                artifacts.append(Artifact("proxy log", self.proxy_log, self.destination(self.proxy_log)))
            else:
                logger.error("%s is expected, but doesn't exist!", self.proxy_log)

        artifacts.append(Artifact("monitor results", self.monitor_log, self.destination(self.monitor_log)))
        artifacts.append(Artifact("agent log", self.agent_log, self.destination(self.agent_log)))
        return artifacts


@dataclass(frozen=True)
class ArtifactResult:
    artifact: Artifact
    ok: bool
    attempts: int
    error: Optional[str] = None


@dataclass
class UploadReport:
    results: List[ArtifactResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and all(result.ok for result in self.results)

    @property
    def uploaded(self) -> List[str]:
        return [result.artifact.destination for result in self.results if result.ok]


class UploadPipeline:
    """Uploads a run's artifacts, retrying each one independently."""

    def __init__(
        self,
        uploader_factory: UploaderFactory,
        attempts: int = 30,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.uploader_factory = uploader_factory
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    def upload_with_retry(self, uploader: Uploader, bucket: str, src: Path, dst: str) -> Tuple[bool, int, Optional[str]]:
        """Try one upload up to `attempts` times; returns (ok, attempts used, last error)."""
        last_error: Optional[str] = None
        for attempt in range(1, self.attempts + 1):
            try:
                uploader.upload_file(bucket, src, dst)
                return True, attempt, None
            except Exception as exc:
                last_error = str(exc)
                logger.error("upload_file error... sleep and retry... (attempt %d/%d: %s)", attempt, self.attempts, exc)
                if attempt < self.attempts:
                    self.sleep(self.backoff_seconds)

        logger.error("giving up on %s after %d attempts", src, self.attempts)
        return False, self.attempts, last_error

    def run(self, plan: UploadPlan) -> UploadReport:
        """One upload pass over every artifact in the plan."""
        logger.info("uploading to storage project %r bucket %r", plan.project, plan.bucket)
        report = UploadReport()
        try:
            uploader = self.uploader_factory(plan.key, plan.project)
        except Exception as exc:
            logger.error("cannot create uploader (%s)", exc)
            report.error = str(exc)
            return report

        for artifact in plan.artifacts():
            logger.info("uploading %s [%s -> %s]", artifact.label, artifact.path, artifact.destination)
            ok, attempts, error = self.upload_with_retry(uploader, plan.bucket, artifact.path, artifact.destination)
            report.results.append(ArtifactResult(artifact=artifact, ok=ok, attempts=attempts, error=error))

        return report
