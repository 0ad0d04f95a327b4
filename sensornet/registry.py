"""Table of sensors connected to a server, and the replies to their requests."""

from __future__ import annotations

import random
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from sensornet.protocol import (
    MAX_PIDS_LENGTH,
    ErrorCode,
    Message,
    MessageCode,
    OkCode,
    ProtocolError,
    log_error,
    log_info,
    status_payload,
)

MAX_CLIENTS = 15
SENSOR_ID_LENGTH = 10
_SHORT_FIELD = 10  # size of the small text fields a payload is cut into
_MIN_LOCATION = 1
_MAX_LOCATION = 10

_LEADING_INT_RE = re.compile(r"\s*([+-]?\d+)")


def _atoi(text: str) -> int:
    match = _LEADING_INT_RE.match(text)
    return int(match.group(1)) if match else 0


def _error(code: ErrorCode) -> Message:
    return Message(MessageCode.ERROR, status_payload(code))


class ServerRole(Enum):
    """What a server keeps track of."""

    STATUS = "SS"
    LOCATION = "SL"


@dataclass
class ClientInfo:
    """One occupied slot; sensor_id stays empty until the sensor registers."""

    handle: Any
    slot: int
    sensor_id: str = ""
    location_id: int = 0
    risk_status: int = -1


@dataclass(frozen=True)
class Reply:
    """What to send back to a client, and whether its connection is then closed."""

    message: Optional[Message] = None
    close: bool = False


def parse_connsen_payload(payload: str) -> tuple[str, int]:
    """Split a REQ_CONNSEN payload "SENSOR_ID,LOC_ID" into its id and location."""
    sensor_id, comma, rest = payload.partition(",")
    if not comma:
        log_error("REQ_CONNSEN: Invalid format, expected 'ID,LocId'.")
        raise ProtocolError("REQ_CONNSEN payload has no comma")
    if not 0 < len(sensor_id) < MAX_PIDS_LENGTH:
        log_error("REQ_CONNSEN: Invalid sensor ID length.")
        raise ProtocolError("REQ_CONNSEN sensor id has an invalid length")
    loc_text = rest[: _SHORT_FIELD - 1]
    if not loc_text:
        log_error("REQ_CONNSEN: Missing LocId.")
        raise ProtocolError("REQ_CONNSEN payload has no location")
    if len(sensor_id) != SENSOR_ID_LENGTH:
        log_error("REQ_CONNSEN: Sensor ID must be exactly 10 characters.")
        raise ProtocolError("REQ_CONNSEN sensor id must be 10 characters")
    return sensor_id, _atoi(loc_text)


class ClientRegistry:
    """Fixed number of client slots, numbered from 1, and the sensors in them."""

    def __init__(
        self,
        role: ServerRole,
        capacity: int = MAX_CLIENTS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.role = role
        self.capacity = capacity
        self._rng = rng if rng is not None else random.Random()
        self._slots: list[Optional[ClientInfo]] = [None] * capacity

    def __getitem__(self, slot: int) -> ClientInfo:
        if not 1 <= slot <= self.capacity or self._slots[slot - 1] is None:
            raise KeyError(slot)
        return self._slots[slot - 1]

    def __iter__(self) -> Iterator[ClientInfo]:
        """Occupied slots, registered or not, in slot order."""
        return (info for info in self._slots if info is not None)

    def __len__(self) -> int:
        """Number of registered sensors."""
        return sum(1 for info in self if info.sensor_id)

    def _find(self, sensor_id: str) -> Optional[ClientInfo]:
        return next((info for info in self if info.sensor_id == sensor_id), None)

    def allocate(self, handle: Any) -> Optional[int]:
        """Put a new connection in the first free slot; None when all are taken."""
        for index, info in enumerate(self._slots):
            if info is None:
                self._slots[index] = ClientInfo(handle=handle, slot=index + 1)
                return index + 1
        log_info("Client limit reached. Rejecting new connection.")
        return None

    def release(self, slot: int) -> None:
        """Free a slot; nothing happens when it is already free."""
        if 1 <= slot <= self.capacity:
            self._slots[slot - 1] = None

    def register(self, slot: int, payload: str) -> Reply:
        """Handle REQ_CONNSEN from the client in slot."""
        info = self[slot]
        try:
            sensor_id, loc_id = parse_connsen_payload(payload)
        except ProtocolError:
            self.release(slot)
            return Reply(_error(ErrorCode.INVALID_PAYLOAD), close=True)
        if loc_id == -1:
            loc_id = self._rng.randint(_MIN_LOCATION, _MAX_LOCATION)
        log_info(f"REQ_CONNSEN parsed: ID='{sensor_id}', LocId={loc_id}")

        if info.sensor_id:
            if info.sensor_id == sensor_id:
                log_info(f"Client {sensor_id} re-sent REQ_CONNSEN. Re-sending RES_CONNSEN.")
                return Reply(Message(MessageCode.RES_CONNSEN, sensor_id))
            log_error(
                f"Client slot {slot} already registered with ID {info.sensor_id}. "
                f"Ignoring conflicting REQ_CONNSEN with ID {sensor_id}."
            )
            return Reply()

        existing = self._find(sensor_id)
        if existing is not None:
            log_error(f"Sensor ID '{sensor_id}' already in use (slot {existing.slot}). Rejecting.")
            self.release(slot)
            return Reply(_error(ErrorCode.SENSOR_ID_ALREADY_EXISTS), close=True)

        if len(self) >= self.capacity:
            log_info("Sensor limit reached. Sending ERROR(09).")
            self.release(slot)
            return Reply(_error(ErrorCode.SENSOR_LIMIT_EXCEEDED), close=True)

        info.sensor_id = sensor_id
        info.location_id = loc_id
        if self.role is ServerRole.STATUS:
            info.risk_status = self._rng.randrange(2)
            log_info(f"Client {sensor_id} added (Status{info.risk_status})")
        log_info(f"Client registered: ID='{sensor_id}', Slot={slot}, LocId={loc_id}")
        return Reply(Message(MessageCode.RES_CONNSEN, str(slot)))

    def disconnect(self, slot: int, payload: str) -> Reply:
        """Handle REQ_DISCSEN, whose payload names the sender's own slot."""
        info = self[slot]
        slot_text = payload[: _SHORT_FIELD - 1]
        if info.sensor_id and _atoi(slot_text) == slot:
            log_info(f"Client (ID: {info.sensor_id}, Slot: {slot}) disconnected.")
            self.release(slot)
            return Reply(
                Message(MessageCode.OK, status_payload(OkCode.SUCCESSFUL_DISCONNECT)),
                close=True,
            )
        log_info(
            f"Invalid REQ_DISCSEN: slot '{slot_text}' mismatch or client not registered. "
            "Sending ERROR(10)."
        )
        return Reply(_error(ErrorCode.SENSOR_NOT_FOUND))

    def set_risk(self, sensor_id: str, status: int) -> ClientInfo:
        """Set a sensor's risk status to 0 or 1; only a status server keeps one."""
        if self.role is not ServerRole.STATUS:
            raise ValueError("set_risk: This command is only valid for STATUS SERVER (SS).")
        if status not in (0, 1):
            raise ValueError("set_risk: Invalid status. Use 0 or 1.")
        info = self._find(sensor_id)
        if info is None or not info.sensor_id:
            raise KeyError(sensor_id)
        info.risk_status = status
        log_info(f"Risk status of sensor {sensor_id} (Slot {info.slot}) updated to {status}.")
        return info

    def locate(self, sensor_id: str) -> Reply:
        """Handle REQ_SENSLOC: the location of the named sensor."""
        sensor_id = sensor_id[: MAX_PIDS_LENGTH - 1]
        info = self._find(sensor_id)
        if info is not None and info.location_id != -1:
            log_info(f"Sensor {sensor_id} found with LocId={info.location_id}")
            return Reply(Message(MessageCode.RES_SENSLOC, str(info.location_id)))
        log_info("Sensor not found. Sending ERROR(10).")
        return Reply(_error(ErrorCode.SENSOR_NOT_FOUND))

    def location_list(self, payload: str) -> Reply:
        """Handle REQ_LOCLIST "SLOT,LOC_ID": the sensors registered at a location."""
        slot_text, comma, rest = payload.partition(",")
        valid = bool(comma) and 0 < len(slot_text) < _SHORT_FIELD
        target = _atoi(rest[: _SHORT_FIELD - 1]) if valid else -1
        if not valid or not _MIN_LOCATION <= target <= _MAX_LOCATION:
            log_error("REQ_LOCLIST: Invalid format or location.")
            return Reply(_error(ErrorCode.SENSOR_NOT_FOUND))

        found = [info.sensor_id for info in self if info.location_id == target]
        if found:
            log_info(f"Found {len(found)} sensors at location {target}")
            return Reply(Message(MessageCode.RES_LOCLIST, ",".join(found)))
        log_info(f"No sensors found at location {target}. Sending ERROR(10).")
        return Reply(_error(ErrorCode.SENSOR_NOT_FOUND))

    def check_alert(self, sensor_id: str) -> Message:
        """Answer a peer's REQ_CHECKALERT with the sensor's location."""
        sensor_id = sensor_id[: MAX_PIDS_LENGTH - 1]
        log_info(f"[SL] REQ_CHECKALERT for sensor {sensor_id}")
        info = self._find(sensor_id)
        if info is not None and info.location_id > 0:
            log_info(
                f"[SL] Found location {info.location_id} for sensor {sensor_id}. "
                "Sending RES_CHECKALERT."
            )
            return Message(MessageCode.RES_CHECKALERT, str(info.location_id))
        log_info(f"[SL] Sensor {sensor_id} not found. Sending ERROR(10).")
        return _error(ErrorCode.SENSOR_NOT_FOUND)

    def status_request(
        self,
        slot: int,
        payload: str,
        ask_peer: Optional[Callable[[Message], Message]],
    ) -> Reply:
        """Handle REQ_SENSSTATUS; a sensor at risk is looked up through ask_peer.

        ask_peer sends a request to the location server and returns its answer;
        it is None when no peer link is established, and may raise OSError or
        ProtocolError.
        """
        info = self[slot]
        if not info.sensor_id or _atoi(payload) != slot:
            log_error("Invalid REQ_SENSSTATUS from client. Slot mismatch or not registered.")
            return Reply(_error(ErrorCode.SENSOR_NOT_FOUND))

        log_info(f"REQ_SENSSTATUS from sensor {info.sensor_id} (Slot: {slot})")
        if info.risk_status != 1:
            log_info("Sensor status is normal (0), no alert.")
            return Reply(Message(MessageCode.RES_SENSSTATUS, "-1"))

        if ask_peer is None:
            log_error("No active P2P connection to SL.")
            return Reply()

        log_info(f"Sending REQ_CHECKALERT {info.sensor_id} to SL...")
        try:
            answer = ask_peer(Message(MessageCode.REQ_CHECKALERT, info.sensor_id))
        except (OSError, ProtocolError):
            log_error("SS: Failed to get a response to REQ_CHECKALERT from SL.")
            return Reply()

        if answer.code == MessageCode.RES_CHECKALERT:
            log_info(f"SL responded with RES_CHECKALERT {answer.payload}")
            log_info(f"Sensor {info.sensor_id} status = 1 (failure detected)")
            return Reply(Message(MessageCode.RES_SENSSTATUS, answer.payload))
        if answer.code == MessageCode.ERROR and answer.number == ErrorCode.SENSOR_NOT_FOUND:
            log_info("SL returned SENSOR_NOT_FOUND.")
            return Reply(Message(MessageCode.ERROR, answer.payload))
        log_error(f"Unexpected SL response: Code={answer.code}, Payload={answer.payload}")
        return Reply()