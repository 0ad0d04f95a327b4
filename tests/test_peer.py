import random

import pytest

from sensornet.peer import P2PState, PeerAction, PeerLink
from sensornet.protocol import ErrorCode, Message, MessageCode, OkCode, status_payload
from sensornet.registry import ClientRegistry, ServerRole


def _established_pair():
    active = PeerLink()
    passive = PeerLink()
    first = active.start_active(4)
    passive.accept_passive(7)
    second = passive.handle_message(first.message)
    third = active.handle_message(second.message)
    last = passive.handle_message(third.message)
    assert last.message is None
    return active, passive


def _location_registry():
    registry = ClientRegistry(ServerRole.LOCATION, rng=random.Random(1))
    slot = registry.allocate("conn")
    reply = registry.register(slot, "1234567890,3")
    assert reply.message.code == MessageCode.RES_CONNSEN
    return registry


def test_new_link_is_disconnected():
    link = PeerLink()
    assert link.state is P2PState.DISCONNECTED
    assert link.connected is False
    assert link.established is False


def test_start_active_sends_connpeer():
    link = PeerLink()
    action = link.start_active(4)
    assert action.message.encode() == b"20 "
    assert link.state is P2PState.REQ_SENT
    assert link.handle == 4


def test_accept_passive_waits_for_request():
    link = PeerLink()
    link.accept_passive(7)
    assert link.state is P2PState.PASSIVE_LISTENING
    assert link.connected is True
    assert link.established is False


def test_passive_side_handshake():
    link = PeerLink()
    link.accept_passive(7)
    action = link.handle_message(Message(MessageCode.REQ_CONNPEER))
    assert action.message == Message(MessageCode.RES_CONNPEER, "Peer7_Active")
    assert link.state is P2PState.RES_SENT_AWAITING_RES
    done = link.handle_message(Message(MessageCode.RES_CONNPEER, "Peer3_Passive"))
    assert done == PeerAction()
    assert link.established is True
    assert link.peer_pids_for_me == "Peer3_Passive"


def test_active_side_handshake():
    link = PeerLink()
    link.start_active(4)
    action = link.handle_message(Message(MessageCode.RES_CONNPEER, "Peer9_Active"))
    assert action.message == Message(MessageCode.RES_CONNPEER, "Peer4_Passive")
    assert link.established is True
    assert link.peer_pids_for_me == "Peer9_Active"


def test_handshake_between_two_links_agrees_on_ids():
    active, passive = _established_pair()
    assert active.established and passive.established
    assert active.peer_pids_for_me == passive.my_pids_for_peer
    assert passive.peer_pids_for_me == active.my_pids_for_peer


def test_request_in_wrong_state_is_ignored():
    link = PeerLink()
    link.start_active(4)
    action = link.handle_message(Message(MessageCode.REQ_CONNPEER))
    assert action == PeerAction()
    assert link.state is P2PState.REQ_SENT


def test_request_disconnect_when_established():
    active, _ = _established_pair()
    action = active.request_disconnect()
    assert action.message == Message(MessageCode.REQ_DISCPEER, active.my_pids_for_peer)
    assert active.state is P2PState.DISCONNECT_REQ_SENT


def test_request_disconnect_without_link_sends_nothing():
    link = PeerLink()
    link.accept_passive(7)
    assert link.request_disconnect() == PeerAction()
    assert link.state is P2PState.PASSIVE_LISTENING


def test_full_disconnect_exchange():
    active, passive = _established_pair()
    request = active.request_disconnect()
    answer = passive.handle_message(request.message)
    assert answer.message.encode() == b"0 01"
    assert answer.close and answer.listen and not answer.shutdown
    assert passive.state is P2PState.DISCONNECTED
    assert passive.my_pids_for_peer == "" and passive.peer_pids_for_me == ""
    final = active.handle_message(answer.message)
    assert final.close and final.shutdown
    assert active.connected is False


def test_disconnect_with_wrong_id_is_refused():
    _, passive = _established_pair()
    action = passive.handle_message(Message(MessageCode.REQ_DISCPEER, "nobody"))
    assert action.message == Message(
        MessageCode.ERROR, status_payload(ErrorCode.PEER_NOT_FOUND)
    )
    assert action.close is False
    assert passive.established is True


def test_peer_not_found_error_closes_link():
    active, _ = _established_pair()
    action = active.handle_message(Message(MessageCode.ERROR, "02"))
    assert action.close is True
    assert active.state is P2PState.DISCONNECTED
    assert active.connected is False


def test_ok_with_other_value_is_unexpected():
    active, _ = _established_pair()
    action = active.handle_message(
        Message(MessageCode.OK, status_payload(OkCode.SUCCESSFUL_CREATE))
    )
    assert action == PeerAction()
    assert active.established is True


def test_check_alert_on_location_server():
    _, passive = _established_pair()
    registry = _location_registry()
    action = passive.handle_message(
        Message(MessageCode.REQ_CHECKALERT, "1234567890"), registry
    )
    assert action.message == Message(MessageCode.RES_CHECKALERT, "3")


def test_check_alert_for_unknown_sensor():
    _, passive = _established_pair()
    registry = _location_registry()
    action = passive.handle_message(
        Message(MessageCode.REQ_CHECKALERT, "0000000000"), registry
    )
    assert action.message.encode() == b"255 10"


def test_check_alert_ignored_by_status_server():
    _, passive = _established_pair()
    registry = ClientRegistry(ServerRole.STATUS, rng=random.Random(1))
    action = passive.handle_message(
        Message(MessageCode.REQ_CHECKALERT, "1234567890"), registry
    )
    assert action == PeerAction()


@pytest.mark.parametrize("handle", [3, 11])
def test_reset_clears_everything(handle):
    link = PeerLink()
    link.start_active(handle)
    link.handle_message(Message(MessageCode.RES_CONNPEER, "PeerX"))
    link.reset()
    assert link.state is P2PState.DISCONNECTED
    assert link.handle is None
    assert (link.my_pids_for_peer, link.peer_pids_for_me) == ("", "")