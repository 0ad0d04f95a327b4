"""Sensor client: registers with a status and a location server, then sends requests typed at the keyboard."""

from __future__ import annotations

import argparse
import ipaddress
import random
import re
import socket
import sys
from typing import Any, Optional

from sensornet.protocol import (
    MAX_MSG_SIZE,
    MAX_PIDS_LENGTH,
    ErrorCode,
    Message,
    MessageCode,
    ProtocolError,
    log_error,
    log_info,
    parse_message,
)

SENSOR_ID_LENGTH = 10
INITIAL_LOCATION = -1
NORMAL_STATUS = -1

_PROMPT = "Enter commands ('check failure', 'locate <SensorID>', 'diagnose <LocID>', 'kill' to exit):"
_LEADING_INT_RE = re.compile(r"\s*([+-]?\d+)")
_REGIONS = (
    (1, 3, "Norte"),
    (4, 5, "Sul"),
    (6, 7, "Leste"),
    (8, 10, "Oeste"),
)


class SensorError(Exception):
    """Raised when the sensor cannot register with a server."""


def generate_sensor_id(rng: Optional[random.Random] = None) -> str:
    """A random sensor id of ten decimal digits."""
    rng = rng if rng is not None else random.Random()
    return "".join(str(rng.randrange(10)) for _ in range(SENSOR_ID_LENGTH))


def location_region(loc_id: int) -> str:
    """Name of the region a location id belongs to; ValueError outside 1..10."""
    for low, high, name in _REGIONS:
        if low <= loc_id <= high:
            return name
    raise ValueError(f"invalid location id {loc_id}")


def connect_and_register(
    server_name: str, host: str, port: int, loc_id: int, sensor_id: str
) -> tuple[socket.socket, str]:
    """Connect to a server, send REQ_CONNSEN and return the socket with the slot id it confirmed."""
    try:
        ipaddress.IPv4Address(host)
    except ValueError:
        log_error(f"Invalid IP address for {server_name}")
        raise SensorError(f"Invalid IP address for {server_name}") from None
    try:
        sock = socket.create_connection((host, port))
    except OSError as exc:
        log_error(f"Failed to connect to {server_name} server ({host}:{port})")
        raise SensorError(f"Failed to connect to {server_name} server ({host}:{port})") from exc
    log_info(f"Connected to {server_name} server ({host}:{port}).")

    try:
        return sock, _register(sock, server_name, loc_id, sensor_id)
    except SensorError:
        sock.close()
        raise


def _register(sock: socket.socket, server_name: str, loc_id: int, sensor_id: str) -> str:
    payload = f"{sensor_id},{loc_id}"[: MAX_MSG_SIZE - 1]
    log_info(f"Sending REQ_CONNSEN to {server_name}")
    try:
        sock.sendall(Message(MessageCode.REQ_CONNSEN, payload).encode())
    except OSError as exc:
        log_error(f"Failed to send REQ_CONNSEN to {server_name}")
        raise SensorError(f"Failed to send REQ_CONNSEN to {server_name}") from exc

    try:
        data = sock.recv(MAX_MSG_SIZE)
    except OSError as exc:
        log_error(f"Failed to read RES_CONNSEN response from {server_name} server")
        raise SensorError(f"Failed to read RES_CONNSEN from {server_name}") from exc
    if not data:
        log_info(f"{server_name} server disconnected before sending RES_CONNSEN.")
        raise SensorError(f"{server_name} server disconnected before sending RES_CONNSEN")

    try:
        message = parse_message(data)
    except ProtocolError as exc:
        log_error(f"Failed to parse response from {server_name} server.")
        raise SensorError(f"Failed to parse response from {server_name} server") from exc

    if message.code == MessageCode.RES_CONNSEN:
        slot = message.payload[: MAX_PIDS_LENGTH - 1]
        log_info(f"{server_name} New ID: {slot}")
        return slot
    if message.code == MessageCode.ERROR:
        error = message.number
        if error == ErrorCode.SENSOR_LIMIT_EXCEEDED:
            text = f"{server_name} server responded with ERROR(09): Sensor limit exceeded."
        else:
            text = f"{server_name} responded with ERROR({error:02d})"
        log_error(text)
        raise SensorError(text)
    text = (
        f"{server_name} responded with an unexpected message: "
        f"Code={message.code}, Payload='{message.payload}'"
    )
    log_info(text)
    raise SensorError(text)


class Sensor:
    """A registered sensor holding its connections to the status (SS) and location (SL) servers."""

    def __init__(
        self,
        sensor_id: str,
        ss_conn: Optional[socket.socket],
        ss_slot: str,
        sl_conn: Optional[socket.socket],
        sl_slot: str,
    ) -> None:
        self.sensor_id = sensor_id
        self.ss_conn = ss_conn
        self.ss_slot = ss_slot
        self.sl_conn = sl_conn
        self.sl_slot = sl_slot

    def __enter__(self) -> "Sensor":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def handle_command(self, line: str) -> bool:
        """Carry out one keyboard command; False means the sensor should stop."""
        line = line.split("\n", 1)[0]
        if line == "kill":
            self._kill()
            return False
        if line == "check failure":
            self._check_failure()
        elif line.startswith("locate "):
            tokens = line[len("locate "):].split()
            if tokens:
                self._locate(tokens[0][: MAX_PIDS_LENGTH - 1])
        elif line.startswith("diagnose "):
            match = _LEADING_INT_RE.match(line[len("diagnose "):])
            if match is not None:
                self._diagnose(int(match.group(1)))
        else:
            log_info("Unknown command.")
        return True

    def close(self) -> None:
        """Close whatever connections are still open."""
        for conn in (self.ss_conn, self.sl_conn):
            if conn is not None:
                conn.close()
        self.ss_conn = self.sl_conn = None

    def _exchange(
        self, server_name: str, conn: socket.socket, message: Message
    ) -> Optional[Message]:
        request = MessageCode(message.code).name
        try:
            conn.sendall(message.encode())
        except OSError:
            log_error(f"Failed to send {request} to {server_name}")
            return None
        try:
            data = conn.recv(MAX_MSG_SIZE - 1)
        except OSError:
            data = b""
        if not data:
            log_error(f"Failed to read response from {server_name} or disconnected")
            return None
        try:
            return parse_message(data)
        except ProtocolError:
            log_error(f"Failed to parse response from {server_name} for {request}")
            return None

    def _kill(self) -> None:
        log_info("'kill' command received. Disconnecting from SS and SL servers...")
        for name, conn, slot in (("SS", self.ss_conn, self.ss_slot), ("SL", self.sl_conn, self.sl_slot)):
            if conn is None:
                continue
            log_info(f"Sending REQ_DISCSEN (Slot ID: {slot}) to {name}...")
            try:
                conn.sendall(Message(MessageCode.REQ_DISCSEN, slot).encode())
            except OSError:
                log_error(f"Failed to send REQ_DISCSEN to {name}")
            else:
                try:
                    conn.recv(MAX_MSG_SIZE - 1)
                except OSError:
                    pass
                log_info(f"Received disconnect confirmation from {name}.")
            conn.close()
        self.ss_conn = self.sl_conn = None
        log_info("Disconnection requested from servers. Shutting down sensor.")

    def _check_failure(self) -> None:
        if self.ss_conn is None:
            return
        log_info(f"Sending REQ_SENSSTATUS (Slot ID: {self.ss_slot}) to SS...")
        answer = self._exchange("SS", self.ss_conn, Message(MessageCode.REQ_SENSSTATUS, self.ss_slot))
        if answer is None:
            return
        if answer.code != MessageCode.RES_SENSSTATUS:
            log_info("Received error or unexpected response from SS.")
            return
        loc_id = answer.number
        if loc_id == NORMAL_STATUS:
            log_info("Normal status reported for the sensor.")
            return
        try:
            region = location_region(loc_id)
        except ValueError:
            log_error("Received invalid location ID from SS.")
            return
        log_info(f"Alert received from location: {loc_id} ({region})")

    def _locate(self, target: str) -> None:
        if self.sl_conn is None:
            return
        log_info(f"Sending REQ_SENSLOC for sensor '{target}' to SL...")
        answer = self._exchange("SL", self.sl_conn, Message(MessageCode.REQ_SENSLOC, target))
        if answer is None:
            return
        if answer.code == MessageCode.RES_SENSLOC:
            log_info(f"Sensor '{target}' is at location ID: {answer.payload}")
        elif answer.code == MessageCode.ERROR and answer.number == ErrorCode.SENSOR_NOT_FOUND:
            log_info("Sensor not found at SL.")
        else:
            log_info("Received error or unexpected response from SL for REQ_SENSLOC.")

    def _diagnose(self, loc_id: int) -> None:
        if self.sl_conn is None:
            return
        payload = f"{self.sl_slot},{loc_id}"
        log_info(f"Sending REQ_LOCLIST for location {loc_id} to SL...")
        answer = self._exchange("SL", self.sl_conn, Message(MessageCode.REQ_LOCLIST, payload))
        if answer is None:
            return
        if answer.code == MessageCode.RES_LOCLIST:
            log_info(f"Sensors at location {loc_id}: [{answer.payload}]")
        elif answer.code == MessageCode.ERROR and answer.number == ErrorCode.SENSOR_NOT_FOUND:
            log_info("No sensors found at the specified location.")
        else:
            log_info("Received error or unexpected response from SL.")


def _parse_args(argv: Optional[list[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sensor",
        description="Sensor client.",
        epilog="Example: sensor 127.0.0.1 61000 127.0.0.1 62000",
    )
    parser.add_argument("ss_server_ip")
    parser.add_argument("ss_port", type=int)
    parser.add_argument("sl_server_ip")
    parser.add_argument("sl_port", type=int)
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Register with both servers and read commands from standard input."""
    args = _parse_args(argv)
    sensor_id = generate_sensor_id()
    log_info(f"Sensor initialized with ID: {sensor_id}")

    try:
        ss_conn, ss_slot = connect_and_register(
            "SS", args.ss_server_ip, args.ss_port, INITIAL_LOCATION, sensor_id
        )
    except SensorError:
        log_info("Could not get Slot ID from Status Server. Shutting down.")
        return 1
    try:
        sl_conn, sl_slot = connect_and_register(
            "SL", args.sl_server_ip, args.sl_port, INITIAL_LOCATION, sensor_id
        )
    except SensorError:
        log_info("Could not get Slot ID from Location Server. Shutting down.")
        ss_conn.close()
        return 1

    with Sensor(sensor_id, ss_conn, ss_slot, sl_conn, sl_slot) as sensor:
        if ss_slot != sl_slot:
            log_error("Slot IDs confirmed by SS and SL do not match. Shutting down.")
            return 1
        log_info("OK(02)")
        log_info("Initial handshake with SS and SL completed.")
        log_info(f"Sensor slot ID {ss_slot} confirmed by both SS and SL.")

        print(_PROMPT, flush=True)
        for line in sys.stdin:
            if not sensor.handle_command(line):
                break
            print(_PROMPT, flush=True)
    log_info("Sensor shut down.")
    return 0