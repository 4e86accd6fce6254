"""Per-engine launch descriptions and their flag construction.

Each supported engine is a tagged variant carrying exactly the values its
command line needs. `build_engine` derives a variant from a start command and
the agent context; `build_argv` turns a variant into the argument vector handed
to the process runner and has no side effects.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, List, Literal, Optional, Union

from jinja2 import BaseLoader, Environment
from pydantic import BaseModel, ConfigDict, Field

from dbagent.core.context import AgentContext, ResolvedPaths
from dbagent.core.models import Command, DatabaseKind
from dbagent.utils.diagnostics import ConfigurationError

ETCD_CLIENT_PORT = 2379
ETCD_PEER_PORT = 2380
ETCD_CLUSTER_TOKEN = "etcd_token"

ZOOKEEPER_MAIN_CLASS = "org.apache.zookeeper.server.quorum.QuorumPeerMain"

ZOOKEEPER_CONFIG_TEMPLATE = """tickTime={{ cfg.tick_time }}
dataDir={{ cfg.data_dir }}
clientPort={{ cfg.client_port }}
initLimit={{ cfg.init_limit }}
syncLimit={{ cfg.sync_limit }}
maxClientCnxns={{ cfg.max_client_cnxns }}
snapCount={{ cfg.snap_count }}
{% for peer in cfg.peers %}server.{{ peer.my_id }}={{ peer.ip }}:2888:3888
{% endfor %}"""


class _Spec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ProxySpec(_Spec):
    """Translation proxy pointed at the local etcd client endpoint."""

    name: Literal["zetcd", "cetcd"]
    binary: str
    listen_flag: str
    listen_address: str
    endpoint_flag: str
    endpoint: str


class EtcdEngine(_Spec):
    kind: Literal["etcd"] = "etcd"
    database: DatabaseKind
    binary: str
    data_dir: Path
    name: str
    client_url: str
    peer_url: str
    initial_cluster: str
    cluster_token: str = ETCD_CLUSTER_TOKEN
    proxy: Optional[ProxySpec] = None


class ZookeeperPeer(_Spec):
    my_id: int
    ip: str


class ZookeeperConfig(_Spec):
    tick_time: int
    data_dir: Path
    client_port: int
    init_limit: int
    sync_limit: int
    max_client_cnxns: int
    snap_count: int
    peers: List[ZookeeperPeer]


class ZookeeperEngine(_Spec):
    kind: Literal["zookeeper"] = "zookeeper"
    java: str
    classpath: str
    working_dir: Path
    data_dir: Path
    config_path: Path
    my_id: int
    config: ZookeeperConfig


class ConsulEngine(_Spec):
    kind: Literal["consul"] = "consul"
    binary: str
    data_dir: Path
    bind: str
    client: str
    bootstrap_expect: int
    join: Optional[str] = None

    @property
    def is_leader(self) -> bool:
        return self.join is None


EngineSpec = Annotated[Union[EtcdEngine, ZookeeperEngine, ConsulEngine], Field(discriminator="kind")]


def _etcd_engine(command: Command, context: AgentContext, paths: ResolvedPaths) -> EtcdEngine:
    names = [f"etcd-{i + 1}" for i in range(len(command.peer_ips))]
    client_urls = [f"http://{ip}:{ETCD_CLIENT_PORT}" for ip in command.peer_ips]
    peer_urls = [f"http://{ip}:{ETCD_PEER_PORT}" for ip in command.peer_ips]
    members = [f"{name}={url}" for name, url in zip(names, peer_urls)]

    index = command.server_index
    proxy: Optional[ProxySpec] = None
    if command.database == DatabaseKind.ZETCD:
        proxy = ProxySpec(
            name="zetcd",
            binary=context.binaries.zetcd,
            listen_flag="-zkaddr",
            listen_address="0.0.0.0:2181",
            endpoint_flag="-endpoint",
            endpoint=client_urls[index],
        )
    elif command.database == DatabaseKind.CETCD:
        proxy = ProxySpec(
            name="cetcd",
            binary=context.binaries.cetcd,
            listen_flag="-consuladdr",
            listen_address="0.0.0.0:8500",
            endpoint_flag="-etcd",
            endpoint=client_urls[index],
        )

    return EtcdEngine(
        database=command.database,
        binary=context.binaries.etcd,
        data_dir=paths.etcd_data_dir,
        name=names[index],
        client_url=client_urls[index],
        peer_url=peer_urls[index],
        initial_cluster=",".join(members),
        proxy=proxy,
    )


def _zookeeper_engine(command: Command, context: AgentContext, paths: ResolvedPaths) -> ZookeeperEngine:
    defaults = context.zookeeper
    config = ZookeeperConfig(
        tick_time=defaults.tick_time,
        data_dir=paths.zookeeper_data_dir,
        client_port=defaults.client_port,
        init_limit=defaults.init_limit,
        sync_limit=defaults.sync_limit,
        max_client_cnxns=command.zookeeper_max_client_cnxns,
        snap_count=command.zookeeper_snap_count,
        peers=[ZookeeperPeer(my_id=i + 1, ip=ip) for i, ip in enumerate(command.peer_ips)],
    )
    return ZookeeperEngine(
        java=context.binaries.java,
        classpath=context.binaries.zookeeper_classpath,
        working_dir=paths.zookeeper_working_dir,
        data_dir=paths.zookeeper_data_dir,
        config_path=paths.zookeeper_config,
        my_id=command.zookeeper_my_id,
        config=config,
    )


def _consul_engine(command: Command, context: AgentContext, paths: ResolvedPaths) -> ConsulEngine:
    address = command.peer_ips[command.server_index]
    join = None if command.server_index == 0 else command.peer_ips[0]
    return ConsulEngine(
        binary=context.binaries.consul,
        data_dir=paths.consul_data_dir,
        bind=address,
        client=address,
        bootstrap_expect=len(command.peer_ips),
        join=join,
    )


def build_engine(command: Command, context: AgentContext, paths: Optional[ResolvedPaths] = None) -> EngineSpec:
    """Derive the launch description for a start command."""
    if not command.peer_ips:
        raise ConfigurationError("peer_ips must list at least one address", operation="start")
    if command.server_index >= len(command.peer_ips):
        raise ConfigurationError(
            f"server_index {command.server_index} is out of range for {len(command.peer_ips)} peers",
            operation="start",
        )

    resolved = paths or context.resolved_paths()
    if command.database.is_etcd:
        return _etcd_engine(command, context, resolved)
    if command.database == DatabaseKind.ZOOKEEPER:
        return _zookeeper_engine(command, context, resolved)
    if command.database == DatabaseKind.CONSUL:
        return _consul_engine(command, context, resolved)
    raise ConfigurationError(f"unknown database {command.database!r}", operation="start")


def build_flags(engine: EngineSpec) -> List[str]:
    """Return the engine's flag list (arguments after the executable)."""
    if isinstance(engine, EtcdEngine):
        return [
            "--name", engine.name,
            "--data-dir", str(engine.data_dir),

            "--listen-client-urls", engine.client_url,
            "--advertise-client-urls", engine.client_url,

            "--listen-peer-urls", engine.peer_url,
            "--initial-advertise-peer-urls", engine.peer_url,

            "--initial-cluster-token", engine.cluster_token,
            "--initial-cluster", engine.initial_cluster,
            "--initial-cluster-state", "new",
        ]

    if isinstance(engine, ZookeeperEngine):
        return ["-cp", engine.classpath, ZOOKEEPER_MAIN_CLASS, str(engine.config_path)]

    if isinstance(engine, ConsulEngine):
        flags = [
            "agent",
            "-server",
            "-data-dir", str(engine.data_dir),
            "-bind", engine.bind,
            "-client", engine.client,
        ]
        if engine.is_leader:
            flags += ["-bootstrap-expect", str(engine.bootstrap_expect)]
        else:
            flags += ["-join", engine.join]
        return flags

    raise TypeError(f"Unsupported engine spec: {type(engine).__name__}")


def executable_for(engine: EngineSpec) -> str:
    if isinstance(engine, ZookeeperEngine):
        return engine.java
    return engine.binary


def build_argv(engine: EngineSpec) -> List[str]:
    return [executable_for(engine), *build_flags(engine)]


def build_proxy_argv(proxy: ProxySpec) -> List[str]:
    return [
        proxy.binary,
        proxy.listen_flag, proxy.listen_address,
        proxy.endpoint_flag, proxy.endpoint,
    ]


def required_executables(engine: EngineSpec) -> List[str]:
    """Executables that must exist on disk before the engine can start."""
    executables = [executable_for(engine)]
    if isinstance(engine, EtcdEngine) and engine.proxy is not None:
        executables.append(engine.proxy.binary)
    return executables


def render_zookeeper_config(config: ZookeeperConfig) -> str:
    env = Environment(loader=BaseLoader())
    template = env.from_string(ZOOKEEPER_CONFIG_TEMPLATE)
    return template.render(cfg=config)
