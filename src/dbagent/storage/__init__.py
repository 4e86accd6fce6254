"""Remote object storage uploaders."""

from dbagent.storage.uploader import (
	GoogleCloudStorageUploader,
	Uploader,
	google_cloud_storage_factory,
	join_object_path,
	walk_files,
)

__all__ = [
	"GoogleCloudStorageUploader",
	"Uploader",
	"google_cloud_storage_factory",
	"join_object_path",
	"walk_files",
]
