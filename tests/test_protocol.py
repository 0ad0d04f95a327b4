import pytest

from sensornet.protocol import (
    MAX_MSG_SIZE,
    ErrorCode,
    Message,
    MessageCode,
    OkCode,
    ProtocolError,
    build_message,
    log_error,
    log_info,
    parse_message,
    status_payload,
)


def test_codes_match_wire_values():
    assert build_message(MessageCode.REQ_CONNPEER, None) == b"20 "
    assert build_message(MessageCode.RES_LOCLIST, "a") == b"43 a"
    assert build_message(MessageCode.ERROR, status_payload(ErrorCode.SENSOR_LIMIT_EXCEEDED)) == b"255 09"
    assert build_message(MessageCode.OK, status_payload(OkCode.SUCCESSFUL_DISCONNECT)) == b"0 01"
    message = parse_message(b"255 10")
    assert message.code == MessageCode.ERROR
    assert message.number == ErrorCode.SENSOR_NOT_FOUND


def test_build_without_payload_keeps_trailing_space():
    assert build_message(MessageCode.REQ_CONNPEER, None) == b"20 "
    assert build_message(MessageCode.REQ_CONNPEER, "") == b"20 "


def test_build_with_payload():
    assert build_message(MessageCode.REQ_CONNSEN, "1234567890,-1") == b"23 1234567890,-1"


def test_build_truncates_to_max_size():
    data = build_message(MessageCode.RES_LOCLIST, "x" * 1000)
    assert len(data) == MAX_MSG_SIZE
    assert data.startswith(b"43 x")


@pytest.mark.parametrize(
    "code, payload",
    [
        (MessageCode.RES_CONNSEN, "7"),
        (MessageCode.REQ_LOCLIST, "3,5"),
        (MessageCode.ERROR, "09"),
        (MessageCode.RES_CONNPEER, "Peer4_Active"),
        (MessageCode.REQ_DISCSEN, ""),
    ],
)
def test_round_trip(code, payload):
    message = parse_message(build_message(code, payload))
    assert message == Message(code, payload)


def test_parse_accepts_str_and_stops_at_newline():
    message = parse_message("39 4\nextra")
    assert message.code == MessageCode.RES_SENSLOC
    assert message.payload == "4"


def test_parse_code_only_with_trailing_spaces():
    assert parse_message(b"22   ") == Message(22, "")


def test_parse_skips_leading_whitespace_and_newlines_before_payload():
    assert parse_message(b"  21 \n  abc def") == Message(21, "abc def")


def test_parse_stops_at_nul_byte():
    assert parse_message(b"24 5\0garbage") == Message(24, "5")


def test_parse_negative_payload_and_signed_code():
    message = parse_message(b"+41 -1")
    assert message.code == 41
    assert message.number == -1


@pytest.mark.parametrize("data", [b"", b"   ", b"abc 20", b"-", "\n\n"])
def test_parse_rejects_missing_code(data):
    with pytest.raises(ProtocolError):
        parse_message(data)


def test_number_reads_leading_integer_like_atoi():
    assert Message(255, "09").number == ErrorCode.SENSOR_LIMIT_EXCEEDED
    assert Message(255, "10 trailing").number == ErrorCode.SENSOR_NOT_FOUND
    assert Message(255, "abc").number == 0
    assert Message(255, "").number == 0


def test_message_encode_matches_build():
    message = Message(MessageCode.REQ_SENSLOC, "1234567890")
    assert message.encode() == build_message(MessageCode.REQ_SENSLOC, "1234567890")


def test_status_payload_is_two_digits():
    assert status_payload(ErrorCode.SENSOR_LIMIT_EXCEEDED) == "09"
    assert status_payload(OkCode.SUCCESSFUL_DISCONNECT) == "01"
    assert status_payload(ErrorCode.SENSOR_NOT_FOUND) == "10"


def test_log_info_writes_to_stdout(capsys):
    log_info("hello")
    captured = capsys.readouterr()
    assert captured.out == "[INFO] hello\n"
    assert captured.err == ""


def test_log_error_writes_to_stderr(capsys):
    log_error("bad thing")
    captured = capsys.readouterr()
    assert captured.err == "bad thing\n"
    assert captured.out == ""


def test_log_error_includes_active_exception(capsys):
    try:
        raise OSError("refused")
    except OSError:
        log_error("connect failed")
    assert capsys.readouterr().err == "connect failed: refused\n"