import threading

import pytest

from redis_operator.runtime.admin_rpc import AdminRPCRequest, AdminRPCServer, send_admin_command
from redis_operator.runtime.controller import OperatorController


@pytest.fixture
def admin_server(reconciler):
    controller = OperatorController(reconciler)
    server = AdminRPCServer("127.0.0.1", 0, controller)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    thread.join(timeout=1)


def test_admin_rpc_dump(ready_cluster, admin_server):
    response = send_admin_command("127.0.0.1", admin_server.port, "dump", ready_cluster)

    assert response.ok is True
    assert response.data["state"] == "Ready"
    assert len(response.data["blueprint"]) == 6


def test_admin_rpc_reconcile(ready_cluster, admin_server):
    response = send_admin_command("127.0.0.1", admin_server.port, "reconcile", ready_cluster)

    assert response.ok is True
    assert response.output == f"{ready_cluster}: Ready"
    assert response.data["report"].startswith("Ready (healthy)")


def test_admin_rpc_reset(ready_cluster, admin_server, source):
    response = send_admin_command("127.0.0.1", admin_server.port, "reset", ready_cluster)

    assert response.ok is True
    assert source.fetch(ready_cluster).state == "Reset"


def test_admin_rpc_rebalance_and_fix(ready_cluster, admin_server, platform):
    rebalance = send_admin_command("127.0.0.1", admin_server.port, "rebalance", ready_cluster)
    assert rebalance.ok is True
    assert platform.count_calls("rebalance_slots") == 1

    platform.inject_fault("fix_cluster")
    fix = send_admin_command("127.0.0.1", admin_server.port, "fix", ready_cluster)
    assert fix.ok is False
    assert fix.error == "fix failed"
    assert fix.output == "simulated fix failure"


def test_admin_rpc_unknown_instance(admin_server):
    response = send_admin_command("127.0.0.1", admin_server.port, "dump", "ghost")

    assert response.ok is False
    assert "does not exist" in response.error


def test_admin_rpc_rejects_unknown_command(admin_server):
    response = admin_server.handle_request(AdminRPCRequest(command="explode", instance="demo"))

    assert response.ok is False
    assert "Unknown command 'explode'" in response.error
