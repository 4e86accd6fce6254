import os
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PEER_IPS_DELIMITER = "___"


def _gopath_binary(name: str) -> str:
    gopath = os.environ.get("GOPATH") or str(Path.home() / "go")
    return str(Path(gopath) / "bin" / name)


class Operation(str, Enum):
    """Operations accepted by the Transfer RPC."""

    START = "start"
    STOP = "stop"
    UPLOAD_LOG = "upload_log"


class DatabaseKind(str, Enum):
    """Closed set of supervised engines."""

    ETCDV2 = "etcdv2"
    ETCDV3 = "etcdv3"
    ZETCD = "zetcd"
    CETCD = "cetcd"
    ZOOKEEPER = "zookeeper"
    CONSUL = "consul"

    @property
    def is_etcd(self) -> bool:
        return self in {DatabaseKind.ETCDV2, DatabaseKind.ETCDV3, DatabaseKind.ZETCD, DatabaseKind.CETCD}

    @property
    def uses_proxy(self) -> bool:
        return self in {DatabaseKind.ZETCD, DatabaseKind.CETCD}


class Command(BaseModel):
    """
    Inbound Transfer request.

    `peer_ips` travels as a single "___"-joined string and is parsed into an
    ordered list.
    """
    model_config = ConfigDict(extra="ignore")

    operation: Operation
    database: DatabaseKind = DatabaseKind.ETCDV3
    peer_ips: List[str] = Field(default_factory=list)
    server_index: int = Field(default=0, ge=0)

    # Engine tuning
    zookeeper_my_id: int = 1
    zookeeper_max_client_cnxns: int = 60
    zookeeper_snap_count: int = 100000

    # Remote storage destination
    google_cloud_project_name: str = ""
    google_cloud_storage_key: str = ""
    google_cloud_storage_bucket_name: str = ""
    google_cloud_storage_sub_directory: str = ""
    test_name: str = ""

    @field_validator("peer_ips", mode="before")
    @classmethod
    def split_peer_ips(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [ip for ip in value.split(PEER_IPS_DELIMITER) if ip]
        return value

    @field_serializer("peer_ips")
    def join_peer_ips(self, value: List[str]) -> str:
        return PEER_IPS_DELIMITER.join(value)

    def merge_destination(self, other: "Command") -> "Command":
        """Return a copy carrying `other`'s storage destination; process identity is kept."""
        update = {
            "google_cloud_project_name": other.google_cloud_project_name,
            "google_cloud_storage_bucket_name": other.google_cloud_storage_bucket_name,
            "google_cloud_storage_sub_directory": other.google_cloud_storage_sub_directory,
        }
        if other.google_cloud_storage_key:
            update["google_cloud_storage_key"] = other.google_cloud_storage_key
        return self.model_copy(update=update)


class TransferRequest(BaseModel):
    method: str = "Transfer"
    command: Command


class TransferResponse(BaseModel):
    success: bool
    error: Optional[str] = None


class AgentSettings(BaseSettings):
    """
    Agent-level settings (the 'agent' section in dbagent.yaml).
    """
    model_config = SettingsConfigDict(env_prefix='DBAGENT_', extra='ignore')

    agent_port: str = ":3500"
    working_directory: str = Field(default_factory=lambda: str(Path.home()))
    log_level: str = "INFO"


class PathSettings(BaseModel):
    """
    File layout (the 'paths' section). Relative entries resolve against the
    working directory.
    """
    model_config = ConfigDict(extra='ignore')

    agent_log: str = "agent.log"
    database_log: str = "database.log"
    monitor_log: str = "monitor.csv"
    etcd_data_dir: str = "data.etcd"
    consul_data_dir: str = "data.consul"
    zookeeper_working_dir: str = "zookeeper"
    zookeeper_data_dir: str = "zookeeper/data.zk"
    zookeeper_config: str = "zookeeper.config"
    gcloud_key: str = "gcloud-key.json"


class BinarySettings(BaseModel):
    """
    Engine executables (the 'binaries' section).
    """
    model_config = ConfigDict(extra='ignore')

    etcd: str = Field(default_factory=lambda: _gopath_binary("etcd"))
    zetcd: str = Field(default_factory=lambda: _gopath_binary("zetcd"))
    cetcd: str = Field(default_factory=lambda: _gopath_binary("cetcd"))
    consul: str = Field(default_factory=lambda: _gopath_binary("consul"))
    java: str = "/usr/bin/java"
    zookeeper_classpath: str = (
        "zookeeper-3.4.9.jar:lib/slf4j-api-1.6.1.jar:lib/slf4j-log4j12-1.6.1.jar:lib/log4j-1.2.16.jar:conf"
    )


class LifecycleSettings(BaseModel):
    """
    Timing knobs for stop/upload handling (the 'lifecycle' section).
    """
    model_config = ConfigDict(extra='ignore')

    stop_grace_seconds: float = Field(default=3.0, ge=0)
    monitor_interval_seconds: float = Field(default=1.0, gt=0)
    upload_attempts: int = Field(default=30, ge=1)
    upload_backoff_seconds: float = Field(default=2.0, ge=0)


class ZookeeperSettings(BaseModel):
    """
    Static part of the rendered ZooKeeper config (the 'zookeeper' section).
    """
    model_config = ConfigDict(extra='ignore')

    tick_time: int = 2000
    client_port: int = 2181
    init_limit: int = 5
    sync_limit: int = 5
