"""Status or location server: accepts sensors, links with one peer server, reads keyboard commands."""

from __future__ import annotations

import argparse
import ipaddress
import os
import re
import selectors
import socket
import sys
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional

from sensornet.peer import PeerAction, PeerLink
from sensornet.protocol import (
    MAX_MSG_SIZE,
    SERVER_BACKLOG,
    ErrorCode,
    Message,
    MessageCode,
    ProtocolError,
    build_message,
    log_error,
    log_info,
    parse_message,
    status_payload,
)
from sensornet.registry import ClientRegistry, Reply, ServerRole

_CONNECT_TIMEOUT = 5.0
_SET_RISK_RE = re.compile(r"\s*(\S+)\s+(\S+)\s+([+-]?\d+)")

_HELP = (
    "Available commands:\n"
    "  kill                      - Sends REQ_DISCPEER to the peer if connected.\n"
    "  exit                      - Terminates the server.\n"
    "  set_risk <SensorID> <0|1> - Updates risk status of a sensor (only for SS)."
)


class _Kind(Enum):
    STDIN = auto()
    CLIENT_LISTENER = auto()
    PEER_LISTENER = auto()
    PEER = auto()
    CLIENT = auto()


@dataclass(frozen=True)
class _Source:
    kind: _Kind
    slot: int = 0


@dataclass(frozen=True)
class ServerConfig:
    """Where the peer server is, where sensors connect, and which role this server plays."""

    peer_host: str
    peer_port: int
    client_port: int
    role: ServerRole


def parse_args(argv: Optional[list[str]] = None) -> ServerConfig:
    """Read "<peer_ip> <p2p_port> <client_listen_port> <SS|SL>" from the command line."""
    parser = argparse.ArgumentParser(
        prog="server",
        description="Sensor network server.",
        epilog="Example: server 127.0.0.1 60000 61000 SS",
    )
    parser.add_argument("peer_ip")
    parser.add_argument("p2p_port", type=int)
    parser.add_argument("client_listen_port", type=int)
    parser.add_argument("role", choices=[role.value for role in ServerRole])
    args = parser.parse_args(argv)
    return ServerConfig(
        peer_host=args.peer_ip,
        peer_port=args.p2p_port,
        client_port=args.client_listen_port,
        role=ServerRole(args.role),
    )


class Server:
    """One server process: its listening sockets, its sensors and its peer link."""

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.registry = ClientRegistry(config.role)
        self.peer = PeerLink()
        self._selector = selectors.DefaultSelector()
        self._client_listener: Optional[socket.socket] = None
        self._peer_listener: Optional[socket.socket] = None
        self._peer_sock: Optional[socket.socket] = None
        self._stdin_buffer = ""
        self._running = False
        self._closed = False
        if config.role is ServerRole.STATUS:
            log_info("Server configured as STATUS SERVER (SS).")
        else:
            log_info("Server configured as LOCATION SERVER (SL).")

    def __enter__(self) -> "Server":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def client_address(self) -> Optional[tuple[str, int]]:
        """Address sensors connect to, once started."""
        if self._client_listener is None:
            return None
        return self._client_listener.getsockname()[:2]

    @property
    def peer_listen_address(self) -> Optional[tuple[str, int]]:
        """Address the passive peer listener is bound to, while there is one."""
        if self._peer_listener is None:
            return None
        return self._peer_listener.getsockname()[:2]

    def start(self) -> None:
        """Open the sensor listener, then connect to the peer or wait for it to connect."""
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind(("", self.config.client_port))
            listener.listen(SERVER_BACKLOG)
        except OSError:
            listener.close()
            raise
        self._client_listener = listener
        self._selector.register(listener, selectors.EVENT_READ, _Source(_Kind.CLIENT_LISTENER))
        port = listener.getsockname()[1]
        log_info(f"Client master socket bound to port {port}.")
        log_info(f"Server listening for clients on port {port}...")
        self._connect_peer()

    def run(self, stdin: Any = None) -> None:
        """Serve until 'exit', the end of stdin, or the peer confirms our disconnect."""
        if self._client_listener is None:
            self.start()
        stdin = sys.stdin if stdin is None else stdin
        stdin_fd = stdin.fileno()
        self._selector.register(stdin_fd, selectors.EVENT_READ, _Source(_Kind.STDIN))
        log_info("Waiting for client/P2P connections or keyboard input...")
        print(_HELP, flush=True)
        self._running = True
        try:
            while self._running:
                for key, _ in self._selector.select():
                    if not self._running:
                        break
                    if self._still_registered(key):
                        self._dispatch(key)
        finally:
            self._running = False
            try:
                self._selector.unregister(stdin_fd)
            except (KeyError, ValueError):
                pass

    def handle_command(self, line: str) -> bool:
        """Carry out a keyboard command; False means the server should stop."""
        line = line.rstrip("\n")
        log_info(f"Keyboard command received: '{line}'")
        if line == "kill":
            self._apply_peer_action(self.peer.request_disconnect())
            return True
        if line == "exit":
            log_info("'exit' command received. Shutting down server...")
            return False
        match = _SET_RISK_RE.match(line)
        if match is not None and match.group(1) == "set_risk":
            sensor_id, status = match.group(2), int(match.group(3))
            try:
                self.registry.set_risk(sensor_id, status)
            except KeyError:
                log_info(f"set_risk: Sensor '{sensor_id}' not found or inactive.")
            except ValueError as exc:
                log_info(str(exc))
            return True
        log_info(f"Unknown command: '{line}'")
        return True

    def close(self) -> None:
        """Close every socket and forget every sensor."""
        if self._closed:
            return
        self._closed = True
        log_info("Shutting down and cleaning up...")
        for info in list(self.registry):
            info.handle.close()
            self.registry.release(info.slot)
        for sock in (self._client_listener, self._peer_sock, self._peer_listener):
            if sock is not None:
                sock.close()
        self._client_listener = self._peer_sock = self._peer_listener = None
        self._selector.close()
        log_info("Server terminated.")

    def _still_registered(self, key: selectors.SelectorKey) -> bool:
        try:
            return self._selector.get_key(key.fileobj) is key
        except (KeyError, ValueError):
            return False

    def _dispatch(self, key: selectors.SelectorKey) -> None:
        source: _Source = key.data
        if source.kind is _Kind.STDIN:
            self._read_stdin(key.fd)
        elif source.kind is _Kind.CLIENT_LISTENER:
            self._accept_client()
        elif source.kind is _Kind.PEER_LISTENER:
            self._accept_peer()
        elif source.kind is _Kind.PEER:
            self._read_peer()
        else:
            self._read_client(key.fileobj, source.slot)

    def _read_stdin(self, fd: int) -> None:
        try:
            data = os.read(fd, 4096)
        except OSError:
            data = b""
        if not data:
            log_info("STDIN closed or read error.")
            self._running = False
            return
        self._stdin_buffer += data.decode("utf-8", errors="replace")
        while "\n" in self._stdin_buffer and self._running:
            line, self._stdin_buffer = self._stdin_buffer.split("\n", 1)
            if not self.handle_command(line):
                self._running = False

    # --- peer link ---

    def _connect_peer(self) -> None:
        host, port = self.config.peer_host, self.config.peer_port
        log_info("Attempting active connection to peer...")
        try:
            ipaddress.IPv4Address(host)
        except ValueError:
            log_error("Invalid peer IP address for P2P connection.")
            return
        try:
            sock = socket.create_connection((host, port), timeout=_CONNECT_TIMEOUT)
        except OSError as exc:
            reason = exc.strerror or str(exc)
            log_info(f"Failed to connect to peer {host}:{port}. {reason}.")
            log_info("No peer found, starting passive P2P listener...")
            self._open_peer_listener(initial=True)
            return
        sock.settimeout(None)
        self._peer_sock = sock
        self._selector.register(sock, selectors.EVENT_READ, _Source(_Kind.PEER))
        self._apply_peer_action(self.peer.start_active(sock.fileno()))
        if self._peer_sock is not None:
            log_info("REQ_CONNPEER sent.")

    def _open_peer_listener(self, initial: bool) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("", self.config.peer_port))
            sock.listen(1)
        except OSError:
            sock.close()
            if not initial:
                log_error("Failed to restart passive P2P listening.")
            return
        self._peer_listener = sock
        self._selector.register(sock, selectors.EVENT_READ, _Source(_Kind.PEER_LISTENER))
        port = sock.getsockname()[1]
        if initial:
            log_info(f"Server listening for P2P connections on port {port}...")
        else:
            log_info(f"Now listening for new P2P connections on port {port}...")

    def _close_peer_listener(self) -> None:
        if self._peer_listener is not None:
            self._selector.unregister(self._peer_listener)
            self._peer_listener.close()
            self._peer_listener = None

    def _accept_peer(self) -> None:
        try:
            conn, _ = self._peer_listener.accept()
        except OSError:
            log_error("Failed to accept new P2P connection.")
            return
        self._close_peer_listener()
        self._peer_sock = conn
        self._selector.register(conn, selectors.EVENT_READ, _Source(_Kind.PEER))
        self.peer.accept_passive(conn.fileno())

    def _close_peer_socket(self) -> None:
        if self._peer_sock is not None:
            self._selector.unregister(self._peer_sock)
            self._peer_sock.close()
            self._peer_sock = None

    def _drop_peer(self) -> None:
        self._close_peer_socket()
        self.peer.reset()

    def _read_peer(self) -> None:
        try:
            data = self._peer_sock.recv(MAX_MSG_SIZE)
        except OSError:
            log_error("Error reading from peer.")
            self._drop_peer()
            return
        if not data:
            log_info("Peer disconnected.")
            self._drop_peer()
            return
        log_info(f"Raw data received from peer: [{data.decode('utf-8', errors='replace')}]")
        try:
            message = parse_message(data)
        except ProtocolError:
            log_error("Failed to parse P2P message.")
            self._drop_peer()
            return
        self._apply_peer_action(self.peer.handle_message(message, self.registry))

    def _apply_peer_action(self, action: PeerAction) -> None:
        if action.message is not None and self._peer_sock is not None:
            try:
                self._peer_sock.sendall(action.message.encode())
            except OSError:
                log_error(f"Failed to send message (Code={action.message.code}) to peer.")
                if not action.close:
                    self._drop_peer()
                    return
        if action.close:
            self._close_peer_socket()
        if action.listen and self._peer_listener is None:
            self._open_peer_listener(initial=False)
        if action.shutdown:
            self._running = False

    def _ask_peer(self, message: Message) -> Message:
        sock = self._peer_sock
        if sock is None:
            raise ConnectionError("no peer connection")
        sock.sendall(message.encode())
        data = sock.recv(MAX_MSG_SIZE)
        if not data:
            log_error("SL disconnected before responding.")
            raise ConnectionError("peer closed the connection")
        return parse_message(data)

    # --- sensors ---

    def _accept_client(self) -> None:
        try:
            conn, addr = self._client_listener.accept()
        except OSError:
            log_error("Failed to accept new client connection.")
            return
        slot = self.registry.allocate(conn)
        if slot is None:
            try:
                conn.sendall(
                    build_message(MessageCode.ERROR, status_payload(ErrorCode.SENSOR_LIMIT_EXCEEDED))
                )
            except OSError:
                log_error("Failed to send error message to new client.")
            conn.close()
            return
        log_info(
            f"New client connected from {addr[0]}:{addr[1]} on socket {conn.fileno()}, "
            f"assigned to slot {slot}."
        )
        self._selector.register(conn, selectors.EVENT_READ, _Source(_Kind.CLIENT, slot))

    def _drop_client(self, sock: socket.socket, slot: int) -> None:
        try:
            self._selector.unregister(sock)
        except (KeyError, ValueError):
            pass
        sock.close()
        self.registry.release(slot)

    def _read_client(self, sock: socket.socket, slot: int) -> None:
        try:
            data = sock.recv(MAX_MSG_SIZE)
        except OSError:
            log_error("Error reading from client.")
            self._drop_client(sock, slot)
            return
        if not data:
            log_info(f"Client (socket {sock.fileno()}) disconnected.")
            self._drop_client(sock, slot)
            return
        try:
            host, port = sock.getpeername()[:2]
            log_info(f"Data received from client {host}:{port} (socket {sock.fileno()})")
        except OSError:
            pass
        try:
            message = parse_message(data)
        except ProtocolError:
            log_error("Failed to parse client message.")
            return
        reply = self._client_reply(slot, message)
        if reply.message is not None:
            try:
                sock.sendall(reply.message.encode())
            except OSError:
                log_error("Failed to send reply to client.")
        if reply.close:
            self._drop_client(sock, slot)

    def _client_reply(self, slot: int, message: Message) -> Reply:
        code, role = message.code, self.registry.role
        if code == MessageCode.REQ_CONNSEN:
            return self.registry.register(slot, message.payload)
        if code == MessageCode.REQ_DISCSEN:
            return self.registry.disconnect(slot, message.payload)
        if code == MessageCode.REQ_SENSSTATUS and role is ServerRole.STATUS:
            ask_peer = self._ask_peer if self.peer.established else None
            return self.registry.status_request(slot, message.payload, ask_peer)
        if code == MessageCode.REQ_SENSLOC and role is ServerRole.LOCATION:
            return self.registry.locate(message.payload)
        if code == MessageCode.REQ_LOCLIST and role is ServerRole.LOCATION:
            return self.registry.location_list(message.payload)
        log_info(f"Unknown or unexpected client message code: {code}")
        return Reply()


def main(argv: Optional[list[str]] = None) -> int:
    """Start a server from the command line and serve until it stops."""
    config = parse_args(argv)
    with Server(config) as server:
        try:
            server.start()
        except OSError:
            log_error("Failed to set up the client listening socket.")
            return 1
        server.run()
    return 0