import json
import socket
import threading

import pytest
from typer.testing import CliRunner

from redis_operator.cli.main import app
from redis_operator.runtime.admin_rpc import AdminRPCServer
from redis_operator.runtime.controller import OperatorController

runner = CliRunner()


def _combined_output(result) -> str:
    return f"{result.stdout}{getattr(result, 'stderr', '')}"


def _json_output(result):
    # Data goes to stdout; logs and tables go to stderr
    text = result.stdout
    return json.loads(text[text.index("{\n"):])


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("run", "simulate", "reconcile", "reset", "rebalance", "fix", "dump"):
        assert command in result.stdout


def test_simulate_reaches_ready(tmp_path):
    result = runner.invoke(app, [
        "simulate",
        "--config", str(tmp_path / "missing.yaml"),
        "--leaders", "2",
        "--replicas", "1",
        "--ticks", "3",
    ])

    assert result.exit_code == 0, _combined_output(result)
    summary = _json_output(result)
    assert summary["demo"]["state"] == "Ready"
    assert summary["demo"]["history"] == ["Ready", "Ready", "Ready"]


def test_simulate_recovers_from_crash(tmp_path):
    result = runner.invoke(app, [
        "simulate",
        "--config", str(tmp_path / "missing.yaml"),
        "--ticks", "5",
        "--kill", "leader-0",
    ])

    assert result.exit_code == 0, _combined_output(result)
    summary = _json_output(result)
    assert summary["demo"]["history"] == ["Ready", "Ready", "Recovering", "Ready", "Ready"]


def test_simulate_uses_configured_instances(tmp_path):
    config_file = tmp_path / "operator.yaml"
    config_file.write_text("""
operator:
  log_level: WARNING
instances:
  cache:
    leaderCount: 2
  sessions:
    leaderCount: 1
    leaderFollowersCount: 2
""")

    result = runner.invoke(app, ["simulate", "--config", str(config_file), "--ticks", "3", "--scale-to", "3"])

    assert result.exit_code == 0, _combined_output(result)
    summary = _json_output(result)
    assert sorted(summary) == ["cache", "sessions"]
    assert summary["cache"]["history"] == ["Ready", "Ready", "Scale"]
    assert summary["sessions"]["history"][-1] == "Scale"


def test_simulate_rejects_invalid_config(tmp_path):
    config_file = tmp_path / "operator.yaml"
    config_file.write_text("operator:\n  requeue_seconds: 1\n  probe_timeout_seconds: 5\n")

    result = runner.invoke(app, ["simulate", "--config", str(config_file)])

    assert result.exit_code == 1
    assert "Invalid configuration" in _combined_output(result)


@pytest.fixture
def admin_port(reconciler, ready_cluster):
    server = AdminRPCServer("127.0.0.1", 0, OperatorController(reconciler))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.port
    server.shutdown()
    thread.join(timeout=1)


def test_dump_through_admin_api(tmp_path, admin_port):
    result = runner.invoke(app, [
        "dump", "demo",
        "--config", str(tmp_path / "missing.yaml"),
        "--port", str(admin_port),
    ])

    assert result.exit_code == 0, _combined_output(result)
    assert _json_output(result)["state"] == "Ready"


def test_admin_command_failure_exits_non_zero(tmp_path, admin_port):
    result = runner.invoke(app, [
        "rebalance", "ghost",
        "--config", str(tmp_path / "missing.yaml"),
        "--port", str(admin_port),
    ])

    assert result.exit_code == 1
    assert "does not exist" in _combined_output(result)


def test_admin_command_without_operator(tmp_path):
    with socket.socket() as probe:
        probe.bind(("127.0.0.1", 0))
        free_port = probe.getsockname()[1]

    result = runner.invoke(app, [
        "reconcile", "demo",
        "--config", str(tmp_path / "missing.yaml"),
        "--port", str(free_port),
    ])

    assert result.exit_code == 1
    assert "unreachable" in _combined_output(result)
