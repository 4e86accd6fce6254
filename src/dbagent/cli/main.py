import logging
import signal
import threading
import typer
from pathlib import Path
from typing import Dict, Iterable, Optional

from pydantic import ValidationError

from dbagent.cli.formatter import OutputFormatter
from dbagent.config.loader import load_config
from dbagent.core.context import AgentContext
from dbagent.core.engines import EtcdEngine, build_argv, build_engine, build_proxy_argv
from dbagent.core.models import Command, Operation
from dbagent.runtime.controller import AgentController
from dbagent.runtime.rpc import TransferServer, parse_listen_address, send_transfer
from dbagent.utils.diagnostics import AgentError
from dbagent.utils.log_setup import configure_logging

logger = logging.getLogger("dbagent.cli")

app = typer.Typer(name="dbagent", help="Database benchmark agent", rich_markup_mode=None)

DEFAULT_CONFIG_FILE = "dbagent.yaml"
DEFAULT_AGENT_ADDRESS = "127.0.0.1:3500"

COMMAND_OPTIONS: Dict[str, str] = {
    "--operation": "operation",
    "--database": "database",
    "--peer-ips": "peer_ips",
    "--server-index": "server_index",
    "--test-name": "test_name",
    "--project": "google_cloud_project_name",
    "--bucket": "google_cloud_storage_bucket_name",
    "--sub-directory": "google_cloud_storage_sub_directory",
    "--zk-my-id": "zookeeper_my_id",
    "--zk-max-client-cnxns": "zookeeper_max_client_cnxns",
    "--zk-snap-count": "zookeeper_snap_count",
}


def _read_option_value(tokens: list[str], index: int, option_name: str) -> tuple[str, int]:
    if index + 1 >= len(tokens):
        raise typer.BadParameter(f"Option {option_name} requires a value.")
    return tokens[index + 1], index + 2


def _parse_options(tokens: list[str], allowed: Iterable[str]) -> Dict[str, str]:
    allowed_names = set(allowed)
    values: Dict[str, str] = {}
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token.startswith("--") and "=" in token:
            name, value = token.split("=", 1)
            if name not in allowed_names:
                raise typer.BadParameter(f"Unknown option: {name}")
            values[name] = value
            index += 1
            continue
        if token in allowed_names:
            values[token], index = _read_option_value(tokens, index, token)
            continue
        if token.startswith("-"):
            raise typer.BadParameter(f"Unknown option: {token}")
        raise typer.BadParameter(f"Unexpected arguments: {' '.join(tokens[index:])}")
    return values


def _load_context(values: Dict[str, str]) -> AgentContext:
    config_path = Path(values.get("--config", DEFAULT_CONFIG_FILE))
    context = AgentContext(config_dict=load_config(config_path))

    overrides = {}
    if "--agent-port" in values:
        overrides["agent_port"] = values["--agent-port"]
    if "--working-directory" in values:
        overrides["working_directory"] = values["--working-directory"]
    if "--log-level" in values:
        overrides["log_level"] = values["--log-level"]
    if overrides:
        context.settings = context.settings.model_copy(update=overrides)
    return context


def _command_from_options(values: Dict[str, str], default_operation: Optional[Operation] = None) -> Command:
    payload = {field: values[option] for option, field in COMMAND_OPTIONS.items() if option in values}
    if "operation" not in payload and default_operation is not None:
        payload["operation"] = default_operation.value

    if "--key-file" in values:
        key_path = Path(values["--key-file"])
        try:
            payload["google_cloud_storage_key"] = key_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise typer.BadParameter(f"Cannot read key file {key_path}: {exc}") from exc

    try:
        return Command.model_validate(payload)
    except ValidationError as exc:
        raise typer.BadParameter(f"Invalid command: {exc}") from exc


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def agent(
    ctx: typer.Context,
):
    """Serve the Transfer RPC and supervise database processes on this node."""
    values = _parse_options(list(ctx.args), {"--agent-port", "--working-directory", "--config", "--log-level"})
    context = _load_context(values)

    working_directory = context.working_directory
    if not working_directory.is_dir():
        OutputFormatter.log(f"{working_directory} does not exist", severity="error")
        raise typer.Exit(code=1)

    try:
        host, port = parse_listen_address(context.settings.agent_port)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    paths = context.resolved_paths()
    configure_logging(paths.agent_log, context.settings.log_level)

    controller = AgentController(context)
    try:
        server = TransferServer(host, port, controller.transfer)
    except OSError as exc:
        OutputFormatter.log(f"Unable to listen on {host}:{port}: {exc}", severity="error")
        raise typer.Exit(code=1)

    def _handle_signal(signum, frame):
        logger.info("signal received %s", signal.Signals(signum).name)
        controller.shutdown(timeout=0)
        threading.Thread(target=server.shutdown, daemon=True).start()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    OutputFormatter.log(f"Serving Transfer RPC at {host}:{server.port}", severity="success")
    try:
        server.serve_forever()
    finally:
        controller.shutdown(timeout=5)
        logger.info("agent exited")


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def send(
    ctx: typer.Context,
):
    """Send one Transfer command to a running agent."""
    values = _parse_options(
        list(ctx.args),
        {"--agent", "--timeout", "--key-file", *COMMAND_OPTIONS.keys()},
    )
    if "--operation" not in values:
        raise typer.BadParameter("Option --operation is required.")

    try:
        host, port = parse_listen_address(values.get("--agent", DEFAULT_AGENT_ADDRESS), default_host="127.0.0.1")
        timeout = float(values.get("--timeout", "60"))
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    command = _command_from_options(values)
    try:
        response = send_transfer(host, port, command, timeout_seconds=timeout)
    except OSError as exc:
        OutputFormatter.log(f"Unable to reach agent at {host}:{port}: {exc}", severity="error")
        raise typer.Exit(code=1)

    OutputFormatter.print_data(response)
    if not response.success:
        OutputFormatter.log(response.error or "Transfer failed.", severity="error")
        raise typer.Exit(code=1)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def flags(
    ctx: typer.Context,
):
    """Show the command lines a start command would launch, without starting anything."""
    values = _parse_options(
        list(ctx.args),
        {"--config", "--working-directory", *COMMAND_OPTIONS.keys()},
    )
    context = _load_context(values)
    command = _command_from_options(values, default_operation=Operation.START)
    paths = context.resolved_paths()

    try:
        engine = build_engine(command, context, paths)
    except AgentError as exc:
        OutputFormatter.log(str(exc), severity="error")
        raise typer.Exit(code=1)

    rows = [(command.database.value, str(paths.database_log), build_argv(engine))]
    if isinstance(engine, EtcdEngine) and engine.proxy is not None:
        rows.append((engine.proxy.name, str(paths.proxy_log(engine.proxy.name)), build_proxy_argv(engine.proxy)))
    OutputFormatter.print_launch_plan(rows)


if __name__ == "__main__":
    app()
