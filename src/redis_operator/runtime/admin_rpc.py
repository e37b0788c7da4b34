from __future__ import annotations

import json
import socket
import socketserver
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import BaseModel

from redis_operator.runtime.controller import OperatorController
from redis_operator.utils.diagnostics import OperatorError

ADMIN_COMMANDS = ("reconcile", "reset", "rebalance", "fix", "dump")


class AdminRPCRequest(BaseModel):
    command: str
    instance: str


class AdminRPCResponse(BaseModel):
    ok: bool
    output: str = ""
    data: Optional[Any] = None
    error: str | None = None


def send_admin_command(
    host: str,
    port: int,
    command: str,
    instance: str,
    timeout_seconds: float = 30.0,
) -> AdminRPCResponse:
    request = AdminRPCRequest(command=command, instance=instance)
    payload = request.model_dump_json() + "\n"

    with socket.create_connection((host, port), timeout=timeout_seconds) as sock:
        sock.sendall(payload.encode("utf-8"))
        sock_file = sock.makefile("rb")
        line = sock_file.readline()

    if not line:
        return AdminRPCResponse(ok=False, error="No response from operator.")

    try:
        response_payload = json.loads(line.decode("utf-8"))
        return AdminRPCResponse.model_validate(response_payload)
    except ValueError as exc:
        return AdminRPCResponse(ok=False, error=f"Invalid operator response: {exc}")


@dataclass
class _AdminRPCContext:
    handle: Callable[[AdminRPCRequest], AdminRPCResponse]


class _AdminRPCHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        context = self.server.rpc_context
        line = self.rfile.readline()
        if not line:
            return

        try:
            request_payload = json.loads(line.decode("utf-8"))
            request = AdminRPCRequest.model_validate(request_payload)
            response = context.handle(request)
        except ValueError as exc:
            response = AdminRPCResponse(ok=False, error=f"Invalid request: {exc}")

        self.wfile.write((response.model_dump_json() + "\n").encode("utf-8"))


class _ThreadingTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


class AdminRPCServer:
    """Line-delimited JSON control surface for manual operator actions."""

    def __init__(self, host: str, port: int, controller: OperatorController) -> None:
        self.host = host
        self.controller = controller
        self._server = _ThreadingTCPServer((host, port), _AdminRPCHandler)
        self._server.rpc_context = _AdminRPCContext(handle=self.handle_request)
        self.port = self._server.server_address[1]

    def handle_request(self, request: AdminRPCRequest) -> AdminRPCResponse:
        command = request.command.strip().lower()
        if command not in ADMIN_COMMANDS:
            return AdminRPCResponse(ok=False, error=f"Unknown command '{request.command}'. Use one of: {', '.join(ADMIN_COMMANDS)}")

        try:
            if command == "reconcile":
                result = self.controller.trigger_reconcile(request.instance)
                state = result.state.value if result.state else "stopped"
                return AdminRPCResponse(ok=True, output=f"{request.instance}: {state}", data={"report": result.report})
            if command == "reset":
                self.controller.force_reset(request.instance)
                return AdminRPCResponse(ok=True, output=f"{request.instance}: Reset requested")
            if command == "rebalance":
                outcome = self.controller.manual_rebalance(request.instance)
                return AdminRPCResponse(ok=outcome.ok, output=outcome.output, error=None if outcome.ok else "rebalance failed")
            if command == "fix":
                outcome = self.controller.manual_fix(request.instance)
                return AdminRPCResponse(ok=outcome.ok, output=outcome.output, error=None if outcome.ok else "fix failed")
            return AdminRPCResponse(ok=True, data=self.controller.dump(request.instance))
        except OperatorError as exc:
            return AdminRPCResponse(ok=False, error=str(exc))

    def serve_forever(self) -> None:
        self._server.serve_forever(poll_interval=0.2)

    def shutdown(self) -> None:
        self._server.shutdown()
        self._server.server_close()
