from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from dbagent.core.models import (
    AgentSettings,
    BinarySettings,
    LifecycleSettings,
    PathSettings,
    ZookeeperSettings,
)


class ResolvedPaths(BaseModel):
    """Absolute on-disk locations for one agent instance."""
    model_config = ConfigDict(frozen=True)

    working_directory: Path
    agent_log: Path
    database_log: Path
    monitor_log: Path
    etcd_data_dir: Path
    consul_data_dir: Path
    zookeeper_working_dir: Path
    zookeeper_data_dir: Path
    zookeeper_config: Path
    gcloud_key: Path

    def proxy_log(self, proxy_name: str) -> Path:
        """Companion proxy output lands next to the database log."""
        return self.database_log.with_name(f"{self.database_log.name}-{proxy_name}")


class AgentContext(BaseModel):
    """
    Configuration shared by the CLI, the RPC server and the controller.
    """
    model_config = ConfigDict(extra="forbid")

    # Agent Settings (Maps to 'agent' section)
    settings: AgentSettings = Field(default_factory=AgentSettings)

    # File Layout (Maps to 'paths' section)
    paths: PathSettings = Field(default_factory=PathSettings)

    # Engine Executables (Maps to 'binaries' section)
    binaries: BinarySettings = Field(default_factory=BinarySettings)

    # Stop/Upload Timing (Maps to 'lifecycle' section)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)

    # ZooKeeper Template Defaults (Maps to 'zookeeper' section)
    zookeeper: ZookeeperSettings = Field(default_factory=ZookeeperSettings)

    def __init__(self, config_dict: Optional[Dict[str, Any]] = None, **data: Any):
        """
        Initialize the context, optionally seeded from a loaded dbagent.yaml.
        """
        if config_dict:
            if 'settings' not in data:
                data['settings'] = AgentSettings(**config_dict.get('agent', {}))
            if 'paths' not in data:
                data['paths'] = PathSettings(**config_dict.get('paths', {}))
            if 'binaries' not in data:
                data['binaries'] = BinarySettings(**config_dict.get('binaries', {}))
            if 'lifecycle' not in data:
                data['lifecycle'] = LifecycleSettings(**config_dict.get('lifecycle', {}))
            if 'zookeeper' not in data:
                data['zookeeper'] = ZookeeperSettings(**config_dict.get('zookeeper', {}))

        super().__init__(**data)

    @property
    def working_directory(self) -> Path:
        return Path(self.settings.working_directory).expanduser()

    def resolve(self, path: str) -> Path:
        """Anchor a relative path at the working directory; absolute paths pass through."""
        candidate = Path(path).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.working_directory / candidate

    def resolved_paths(self) -> ResolvedPaths:
        zookeeper_working_dir = self.resolve(self.paths.zookeeper_working_dir)
        config_path = Path(self.paths.zookeeper_config).expanduser()
        if not config_path.is_absolute():
            config_path = zookeeper_working_dir / config_path

        return ResolvedPaths(
            working_directory=self.working_directory,
            agent_log=self.resolve(self.paths.agent_log),
            database_log=self.resolve(self.paths.database_log),
            monitor_log=self.resolve(self.paths.monitor_log),
            etcd_data_dir=self.resolve(self.paths.etcd_data_dir),
            consul_data_dir=self.resolve(self.paths.consul_data_dir),
            zookeeper_working_dir=zookeeper_working_dir,
            zookeeper_data_dir=self.resolve(self.paths.zookeeper_data_dir),
            zookeeper_config=config_path,
            gcloud_key=self.resolve(self.paths.gcloud_key),
        )
