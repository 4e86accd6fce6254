from __future__ import annotations

import json
import logging
import socket
import socketserver
from dataclasses import dataclass
from typing import Callable, Tuple

from pydantic import ValidationError

from dbagent.core.models import Command, TransferRequest, TransferResponse

logger = logging.getLogger(__name__)


def parse_listen_address(address: str, default_host: str = "0.0.0.0") -> Tuple[str, int]:
    """Split `host:port` (or `:port`) into a bindable pair."""
    host, sep, port_text = address.rpartition(":")
    if not sep:
        host, port_text = "", address
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValueError(f"invalid port in address {address!r}") from exc
    if not (1 <= port <= 65535):
        raise ValueError(f"port out of range in address {address!r}")
    return host or default_host, port


def send_transfer(
    host: str,
    port: int,
    command: Command,
    timeout_seconds: float = 60.0,
) -> TransferResponse:
    request = TransferRequest(command=command)
    payload = request.model_dump_json() + "\n"

    with socket.create_connection((host, port), timeout=timeout_seconds) as sock:
        sock.sendall(payload.encode("utf-8"))
        sock_file = sock.makefile("rb")
        line = sock_file.readline()

    if not line:
        return TransferResponse(success=False, error="No response from agent.")

    try:
        response_payload = json.loads(line.decode("utf-8"))
        return TransferResponse.model_validate(response_payload)
    except (ValueError, ValidationError) as exc:
        return TransferResponse(success=False, error=f"Invalid agent response: {exc}")


@dataclass
class _TransferContext:
    handle: Callable[[Command], TransferResponse]


class _TransferHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        context = self.server.rpc_context
        line = self.rfile.readline()
        if not line:
            return

        try:
            request_payload = json.loads(line.decode("utf-8"))
            request = TransferRequest.model_validate(request_payload)
            if request.method != "Transfer":
                raise ValueError(f"unknown method {request.method!r}")
            response = context.handle(request.command)
        except Exception as exc:
            logger.error("transfer failed (%s)", exc)
            response = TransferResponse(success=False, error=str(exc))

        self.wfile.write((response.model_dump_json() + "\n").encode("utf-8"))


class _ThreadingTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


class TransferServer:
    """Serves the single Transfer method over newline-delimited JSON."""

    def __init__(self, host: str, port: int, handle: Callable[[Command], TransferResponse]) -> None:
        self._server = _ThreadingTCPServer((host, port), _TransferHandler)
        self._server.rpc_context = _TransferContext(handle=handle)
        self.host, self.port = self._server.server_address[:2]

    def serve_forever(self) -> None:
        logger.info("started serving Transfer on %s:%d", self.host, self.port)
        self._server.serve_forever(poll_interval=0.2)

    def shutdown(self) -> None:
        self._server.shutdown()
        self._server.server_close()
