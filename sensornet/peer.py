"""State machine for the single server-to-server link and its handshake."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional

from sensornet.protocol import (
    MAX_PIDS_LENGTH,
    ErrorCode,
    Message,
    MessageCode,
    OkCode,
    log_info,
    status_payload,
)
from sensornet.registry import ClientRegistry, ServerRole


class P2PState(Enum):
    """Where the link to the peer server stands."""

    DISCONNECTED = auto()
    ACTIVE_CONNECTING = auto()
    PASSIVE_LISTENING = auto()
    REQ_SENT = auto()
    RES_SENT_AWAITING_RES = auto()
    FULLY_ESTABLISHED = auto()
    DISCONNECT_REQ_SENT = auto()


@dataclass(frozen=True)
class PeerAction:
    """What the server does after a step of the link.

    message is sent to the peer first; then the peer connection is closed
    when close is set, a passive listener is reopened when listen is set,
    and the server stops when shutdown is set.
    """

    message: Optional[Message] = None
    close: bool = False
    listen: bool = False
    shutdown: bool = False


class PeerLink:
    """The link to the peer server: its state and the ids both sides agreed on."""

    def __init__(self) -> None:
        self.state = P2PState.DISCONNECTED
        self.handle: Optional[Any] = None
        self.my_pids_for_peer = ""
        self.peer_pids_for_me = ""

    @property
    def connected(self) -> bool:
        """True while a peer connection is open."""
        return self.handle is not None

    @property
    def established(self) -> bool:
        """True once the handshake has completed on an open connection."""
        return self.connected and self.state is P2PState.FULLY_ESTABLISHED

    def start_active(self, handle: Any) -> PeerAction:
        """Take an outgoing connection to the peer; the action carries REQ_CONNPEER."""
        self.handle = handle
        self.state = P2PState.ACTIVE_CONNECTING
        log_info(f"Connected to peer on P2P socket {handle}. Sending REQ_CONNPEER...")
        self.state = P2PState.REQ_SENT
        return PeerAction(Message(MessageCode.REQ_CONNPEER))

    def accept_passive(self, handle: Any) -> None:
        """Take a connection the peer opened to us and wait for its REQ_CONNPEER."""
        self.handle = handle
        self.state = P2PState.PASSIVE_LISTENING
        log_info(f"New P2P connection accepted on socket {handle}. State: PASSIVE_LISTENING.")

    def reset(self) -> None:
        """Forget the connection and both ids."""
        self.handle = None
        self.state = P2PState.DISCONNECTED
        self.my_pids_for_peer = ""
        self.peer_pids_for_me = ""

    def request_disconnect(self) -> PeerAction:
        """Ask the peer to end the link; nothing is sent unless it is established."""
        if not self.established:
            log_info("No active P2P connection to disconnect. (Use 'exit' to terminate the server)")
            return PeerAction()
        log_info(f"'kill' command received. Sending REQ_DISCPEER to peer {self.my_pids_for_peer}...")
        self.state = P2PState.DISCONNECT_REQ_SENT
        return PeerAction(Message(MessageCode.REQ_DISCPEER, self.my_pids_for_peer))

    def handle_message(
        self, message: Message, registry: Optional[ClientRegistry] = None
    ) -> PeerAction:
        """Advance the link on a message from the peer and say what to do next."""
        log_info(f"P2P message received: Code={message.code}, Payload='{message.payload}'")
        code = message.code

        if self.state is P2PState.PASSIVE_LISTENING and code == MessageCode.REQ_CONNPEER:
            self.my_pids_for_peer = f"Peer{self.handle}_Active"[: MAX_PIDS_LENGTH - 1]
            log_info(f"Connected peer assigned ID: {self.my_pids_for_peer}")
            self.state = P2PState.RES_SENT_AWAITING_RES
            return PeerAction(Message(MessageCode.RES_CONNPEER, self.my_pids_for_peer))

        if self.state is P2PState.REQ_SENT and code == MessageCode.RES_CONNPEER:
            self.peer_pids_for_me = message.payload[: MAX_PIDS_LENGTH - 1]
            self.my_pids_for_peer = f"Peer{self.handle}_Passive"[: MAX_PIDS_LENGTH - 1]
            log_info("P2P handshake complete (active side). Sending confirmation...")
            self.state = P2PState.FULLY_ESTABLISHED
            self._log_established()
            return PeerAction(Message(MessageCode.RES_CONNPEER, self.my_pids_for_peer))

        if self.state is P2PState.RES_SENT_AWAITING_RES and code == MessageCode.RES_CONNPEER:
            self.peer_pids_for_me = message.payload[: MAX_PIDS_LENGTH - 1]
            self.state = P2PState.FULLY_ESTABLISHED
            self._log_established()
            return PeerAction()

        if code == MessageCode.REQ_DISCPEER:
            return self._peer_disconnect_request(message.payload)

        if code == MessageCode.OK and message.number == OkCode.SUCCESSFUL_DISCONNECT:
            log_info("OK(01) 'Successful disconnect' received from peer.")
            log_info(f"Peer {self.my_pids_for_peer} disconnected.")
            self.reset()
            log_info("Server shutting down after peer disconnection.")
            return PeerAction(close=True, shutdown=True)

        if code == MessageCode.ERROR and message.number == ErrorCode.PEER_NOT_FOUND:
            log_info("ERROR(02) 'Peer not found' received from peer.")
            self.handle = None
            self.state = P2PState.DISCONNECTED
            return PeerAction(close=True)

        if (
            code == MessageCode.REQ_CHECKALERT
            and registry is not None
            and registry.role is ServerRole.LOCATION
        ):
            return PeerAction(registry.check_alert(message.payload))

        log_info(f"Unexpected P2P message (Code={code}) or invalid state ({self.state.name}).")
        return PeerAction()

    def _peer_disconnect_request(self, payload: str) -> PeerAction:
        if payload != self.peer_pids_for_me:
            log_info(
                f"REQ_DISCPEER received with mismatched ID '{payload}'. "
                f"Expected '{self.peer_pids_for_me}'. Sending ERROR(02)."
            )
            return PeerAction(
                Message(MessageCode.ERROR, status_payload(ErrorCode.PEER_NOT_FOUND))
            )
        log_info(
            f"REQ_DISCPEER received from peer {self.my_pids_for_peer} "
            f"(ID: {self.peer_pids_for_me}). Confirming."
        )
        log_info(f"Peer {self.my_pids_for_peer} disconnected.")
        self.reset()
        log_info("Switching to passive P2P listening...")
        return PeerAction(
            Message(MessageCode.OK, status_payload(OkCode.SUCCESSFUL_DISCONNECT)),
            close=True,
            listen=True,
        )

    def _log_established(self) -> None:
        log_info(
            f"P2P connection with peer {self.my_pids_for_peer} "
            f"(ID: {self.peer_pids_for_me}) fully established."
        )