import pytest
from pydantic import TypeAdapter

from dbagent.core.engines import (
    ConsulEngine,
    EngineSpec,
    EtcdEngine,
    ZOOKEEPER_MAIN_CLASS,
    ZookeeperEngine,
    build_argv,
    build_engine,
    build_proxy_argv,
    render_zookeeper_config,
    required_executables,
)
from dbagent.core.models import Command
from dbagent.utils.diagnostics import ConfigurationError

PEERS = "10.0.0.1___10.0.0.2___10.0.0.3"


def test_etcd_flags_for_second_member(agent_context, working_dir):
    command = Command(operation="start", database="etcdv3", peer_ips=PEERS, server_index=1)

    engine = build_engine(command, agent_context)
    argv = build_argv(engine)

    assert isinstance(engine, EtcdEngine)
    assert engine.proxy is None
    assert argv[0] == agent_context.binaries.etcd
    assert argv[1:] == [
        "--name", "etcd-2",
        "--data-dir", str(working_dir / "data.etcd"),
        "--listen-client-urls", "http://10.0.0.2:2379",
        "--advertise-client-urls", "http://10.0.0.2:2379",
        "--listen-peer-urls", "http://10.0.0.2:2380",
        "--initial-advertise-peer-urls", "http://10.0.0.2:2380",
        "--initial-cluster-token", "etcd_token",
        "--initial-cluster",
        "etcd-1=http://10.0.0.1:2380,etcd-2=http://10.0.0.2:2380,etcd-3=http://10.0.0.3:2380",
        "--initial-cluster-state", "new",
    ]


def test_etcdv2_uses_same_flag_layout(agent_context):
    command = Command(operation="start", database="etcdv2", peer_ips="127.0.0.1", server_index=0)

    argv = build_argv(build_engine(command, agent_context))

    assert argv[argv.index("--name") + 1] == "etcd-1"
    assert argv[argv.index("--initial-cluster") + 1] == "etcd-1=http://127.0.0.1:2380"


def test_zetcd_adds_proxy_on_local_client_url(agent_context):
    command = Command(operation="start", database="zetcd", peer_ips=PEERS, server_index=2)

    engine = build_engine(command, agent_context)

    assert engine.proxy is not None
    assert build_proxy_argv(engine.proxy) == [
        agent_context.binaries.zetcd,
        "-zkaddr", "0.0.0.0:2181",
        "-endpoint", "http://10.0.0.3:2379",
    ]
    assert required_executables(engine) == [agent_context.binaries.etcd, agent_context.binaries.zetcd]


def test_cetcd_adds_consul_facing_proxy(agent_context):
    command = Command(operation="start", database="cetcd", peer_ips=PEERS, server_index=0)

    engine = build_engine(command, agent_context)

    assert build_proxy_argv(engine.proxy) == [
        agent_context.binaries.cetcd,
        "-consuladdr", "0.0.0.0:8500",
        "-etcd", "http://10.0.0.1:2379",
    ]


def test_consul_leader_bootstraps(agent_context, working_dir):
    command = Command(operation="start", database="consul", peer_ips=PEERS, server_index=0)

    engine = build_engine(command, agent_context)

    assert isinstance(engine, ConsulEngine)
    assert engine.is_leader
    assert build_argv(engine) == [
        agent_context.binaries.consul,
        "agent", "-server",
        "-data-dir", str(working_dir / "data.consul"),
        "-bind", "10.0.0.1",
        "-client", "10.0.0.1",
        "-bootstrap-expect", "3",
    ]


def test_consul_follower_joins_first_peer(agent_context):
    command = Command(operation="start", database="consul", peer_ips=PEERS, server_index=2)

    argv = build_argv(build_engine(command, agent_context))

    assert argv[argv.index("-bind") + 1] == "10.0.0.3"
    assert argv[-2:] == ["-join", "10.0.0.1"]
    assert "-bootstrap-expect" not in argv


def test_zookeeper_engine_and_config(agent_context, working_dir):
    command = Command(
        operation="start",
        database="zookeeper",
        peer_ips=PEERS,
        server_index=1,
        zookeeper_my_id=2,
        zookeeper_max_client_cnxns=5000,
        zookeeper_snap_count=10000,
    )

    engine = build_engine(command, agent_context)

    assert isinstance(engine, ZookeeperEngine)
    assert engine.my_id == 2
    assert engine.working_dir == working_dir / "zookeeper"
    assert build_argv(engine) == [
        agent_context.binaries.java,
        "-cp", agent_context.binaries.zookeeper_classpath,
        ZOOKEEPER_MAIN_CLASS,
        str(working_dir / "zookeeper" / "zookeeper.config"),
    ]

    rendered = render_zookeeper_config(engine.config)
    lines = rendered.splitlines()
    assert lines[:7] == [
        "tickTime=2000",
        f"dataDir={working_dir / 'zookeeper' / 'data.zk'}",
        "clientPort=2181",
        "initLimit=5",
        "syncLimit=5",
        "maxClientCnxns=5000",
        "snapCount=10000",
    ]
    assert lines[7:] == [
        "server.1=10.0.0.1:2888:3888",
        "server.2=10.0.0.2:2888:3888",
        "server.3=10.0.0.3:2888:3888",
    ]


def test_server_index_out_of_range(agent_context):
    command = Command(operation="start", database="etcdv3", peer_ips=PEERS, server_index=3)

    with pytest.raises(ConfigurationError) as excinfo:
        build_engine(command, agent_context)

    assert "out of range" in str(excinfo.value)


def test_empty_peers_rejected(agent_context):
    with pytest.raises(ConfigurationError):
        build_engine(Command(operation="start", database="consul"), agent_context)


def test_engine_spec_discriminates_on_kind(agent_context):
    command = Command(operation="start", database="consul", peer_ips=PEERS, server_index=1)
    engine = build_engine(command, agent_context)

    adapter = TypeAdapter(EngineSpec)
    restored = adapter.validate_python(engine.model_dump())

    assert isinstance(restored, ConsulEngine)
    assert restored == engine
