from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, Optional, Union

from google.api_core.exceptions import Conflict
from google.cloud import storage
from google.oauth2 import service_account

from dbagent.utils.diagnostics import ConfigurationError, UploadError

logger = logging.getLogger(__name__)

FULL_CONTROL_SCOPE = "https://www.googleapis.com/auth/devstorage.full_control"

# 409 text for a bucket this project already owns; any other conflict is a name taken elsewhere.
ALREADY_OWNED_MESSAGE = "You already own this bucket"


def walk_files(root: Path) -> Dict[Path, str]:
    """Map every regular file under `root` to its posix path relative to `root`."""
    return {
        path: path.relative_to(root).as_posix()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def join_object_path(prefix: str, name: str) -> str:
    prefix = prefix.strip("/")
    name = name.lstrip("/")
    return f"{prefix}/{name}" if prefix else name


class Uploader(ABC):
    """Uploads local files or directory trees to a remote bucket."""

    max_workers: int = 8

    @abstractmethod
    def ensure_bucket(self, bucket: str) -> None:
        """Make sure `bucket` exists; creating an already-owned bucket is not an error."""

    @abstractmethod
    def _upload_object(self, bucket: str, src: Path, dst: str, content_type: Optional[str]) -> None:
        """Upload one local file to object name `dst`."""

    def upload_file(self, bucket: str, src: Union[str, Path], dst: str, content_type: Optional[str] = None) -> None:
        """Upload a single file to `dst` inside `bucket`."""
        src_path = Path(src)
        if not src_path.is_file():
            raise UploadError(f"{src_path} is not a readable file")

        self.ensure_bucket(bucket)
        logger.info("uploading %s ---> %s", src_path, dst)
        self._upload_object(bucket, src_path, dst, content_type)
        logger.info("finished uploading %s", src_path)

    def upload_dir(self, bucket: str, src: Union[str, Path], dst: str, content_type: Optional[str] = None) -> None:
        """
        Upload every file under `src` to `dst/<relative path>`, one task per file.

        The first failing file wins: its error is raised and uploads that have
        not started yet are cancelled.
        """
        src_root = Path(src)
        if not src_root.is_dir():
            raise UploadError(f"{src_root} is not a directory")

        self.ensure_bucket(bucket)
        files = walk_files(src_root)
        if not files:
            logger.info("nothing to upload under %s", src_root)
            return

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="upload") as pool:
            futures = {
                pool.submit(self._upload_object, bucket, path, join_object_path(dst, relative), content_type): path
                for path, relative in files.items()
            }
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)

            for future in done:
                exc = future.exception()
                if exc is None:
                    continue
                for other in pending:
                    other.cancel()
                failed = futures[future]
                raise UploadError(f"uploading {failed} failed: {exc}") from exc

        logger.info("finished uploading %s", src_root)


class GoogleCloudStorageUploader(Uploader):
    """Uploader backed by Google Cloud Storage with service-account credentials."""

    def __init__(
        self,
        key: Union[str, bytes],
        project: str,
        client: Optional[storage.Client] = None,
    ) -> None:
        self.project = project
        if client is not None:
            self._client = client
            return

        try:
            info = json.loads(key)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"invalid service account key: {exc}") from exc

        try:
            credentials = service_account.Credentials.from_service_account_info(info, scopes=[FULL_CONTROL_SCOPE])
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"invalid service account key: {exc}") from exc

        self._client = storage.Client(project=project, credentials=credentials)

    def ensure_bucket(self, bucket: str) -> None:
        try:
            self._client.create_bucket(bucket, project=self.project)
        except Conflict as exc:
            if ALREADY_OWNED_MESSAGE not in str(exc):
                raise UploadError(f"bucket {bucket!r} is not usable: {exc}") from exc
            logger.debug("bucket %s already exists (%s)", bucket, exc)

    def _upload_object(self, bucket: str, src: Path, dst: str, content_type: Optional[str]) -> None:
        blob = self._client.bucket(bucket).blob(dst)
        blob.upload_from_filename(str(src), content_type=content_type)
        logger.info("uploaded %s ---> gs://%s/%s", src, bucket, dst)


def google_cloud_storage_factory(key: Union[str, bytes], project: str) -> Uploader:
    return GoogleCloudStorageUploader(key=key, project=project)
