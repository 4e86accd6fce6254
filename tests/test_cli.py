import json
import pytest
from typer.testing import CliRunner
from dbagent.cli.main import app, _parse_options, COMMAND_OPTIONS
from dbagent.core.models import Operation, TransferResponse

runner = CliRunner()

WIDE = {"COLUMNS": "1000"}


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    # Keep any dbagent.yaml in the real cwd out of these tests.
    monkeypatch.chdir(tmp_path)


def test_parse_options_supports_both_forms():
    values = _parse_options(["--operation", "stop", "--bucket=logs"], COMMAND_OPTIONS.keys())
    assert values == {"--operation": "stop", "--bucket": "logs"}


def test_flags_prints_etcd_launch_plan(tmp_path):
    result = runner.invoke(
        app,
        [
            "flags",
            "--working-directory", str(tmp_path),
            "--database", "etcdv3",
            "--peer-ips", "10.0.0.1___10.0.0.2___10.0.0.3",
            "--server-index", "1",
        ],
        env=WIDE,
    )

    assert result.exit_code == 0, result.output
    assert "Launch Plan" in result.output
    assert "--name etcd-2" in result.output
    assert "--initial-cluster-state new" in result.output


def test_flags_shows_proxy_row_for_cetcd(tmp_path):
    result = runner.invoke(
        app,
        [
            "flags",
            "--working-directory", str(tmp_path),
            "--database", "cetcd",
            "--peer-ips", "10.0.0.1",
        ],
        env=WIDE,
    )

    assert result.exit_code == 0, result.output
    assert "-consuladdr 0.0.0.0:8500 -etcd http://10.0.0.1:2379" in result.output


def test_flags_rejects_out_of_range_index(tmp_path):
    result = runner.invoke(
        app,
        [
            "flags",
            "--working-directory", str(tmp_path),
            "--peer-ips", "10.0.0.1",
            "--server-index", "4",
        ],
        env=WIDE,
    )

    assert result.exit_code == 1
    assert "out of range" in result.output


def test_send_posts_command(monkeypatch, tmp_path):
    sent = {}

    def fake_send(host, port, command, timeout_seconds=60.0):
        sent.update(host=host, port=port, command=command, timeout=timeout_seconds)
        return TransferResponse(success=True)

    key_file = tmp_path / "key.json"
    key_file.write_text('{"type": "service_account"}')
    monkeypatch.setattr("dbagent.cli.main.send_transfer", fake_send)

    result = runner.invoke(
        app,
        [
            "send",
            "--agent", "10.0.0.2:3500",
            "--operation", "upload_log",
            "--bucket", "logs",
            "--test-name", "bench",
            "--key-file", str(key_file),
            "--timeout", "5",
        ],
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {"success": True, "error": None}
    assert sent["host"] == "10.0.0.2"
    assert sent["port"] == 3500
    assert sent["timeout"] == 5.0
    assert sent["command"].operation == Operation.UPLOAD_LOG
    assert sent["command"].google_cloud_storage_bucket_name == "logs"
    assert sent["command"].google_cloud_storage_key == '{"type": "service_account"}'


def test_send_reports_agent_failure(monkeypatch):
    monkeypatch.setattr(
        "dbagent.cli.main.send_transfer",
        lambda host, port, command, timeout_seconds=60.0: TransferResponse(success=False, error="boom"),
    )

    result = runner.invoke(app, ["send", "--operation", "stop"], env=WIDE)

    assert result.exit_code == 1
    assert "boom" in result.output


def test_send_unreachable_agent(monkeypatch):
    def refuse(host, port, command, timeout_seconds=60.0):
        raise ConnectionRefusedError(111, "Connection refused")

    monkeypatch.setattr("dbagent.cli.main.send_transfer", refuse)

    result = runner.invoke(app, ["send", "--operation", "stop"], env=WIDE)

    assert result.exit_code == 1
    assert "Unable to reach agent" in result.output


def test_send_requires_operation():
    result = runner.invoke(app, ["send", "--bucket", "logs"])
    assert result.exit_code == 2


def test_send_rejects_unknown_option():
    result = runner.invoke(app, ["send", "--operation", "stop", "--colour", "red"])
    assert result.exit_code == 2


def test_send_rejects_invalid_operation(monkeypatch):
    monkeypatch.setattr("dbagent.cli.main.send_transfer", lambda *args, **kwargs: TransferResponse(success=True))
    result = runner.invoke(app, ["send", "--operation", "restart"])
    assert result.exit_code == 2


def test_agent_requires_existing_working_directory(tmp_path):
    result = runner.invoke(app, ["agent", "--working-directory", str(tmp_path / "missing")], env=WIDE)

    assert result.exit_code == 1
    assert "does not exist" in result.output
