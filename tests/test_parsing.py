"""Tests for request encoding, response decoding and filter parsing."""

import pytest

from undnemo_lib import parsing
from undnemo_lib.errors import InvalidResponse
from undnemo_lib.models import Acknowledged, Malformed, NotAcknowledged


def test_encode_request_appends_single_cr() -> None:
    assert parsing.encode_request("VERSION") == b"VERSION\r"
    assert parsing.encode_request("CH_INFO", 5) == b"CH_INFO 5\r"
    assert parsing.encode_request("SET_VOLUME", 10) == b"SET_VOLUME 10\r"


def test_classify_requires_exact_ack_token() -> None:
    assert isinstance(parsing.classify("ACK VERSION 1.0.7\r"), Acknowledged)
    assert isinstance(parsing.classify(b"ACK VOLUME 5\r"), Acknowledged)

    assert isinstance(parsing.classify("NACK"), NotAcknowledged)
    assert isinstance(parsing.classify("ACKNOWLEDGED VOLUME 5"), NotAcknowledged)
    assert isinstance(parsing.classify("ERROR ACK"), NotAcknowledged)
    assert isinstance(parsing.classify(""), NotAcknowledged)


def test_parse_fields_scalar_payload() -> None:
    assert parsing.parse_fields("ACK VOLUME 5") == ["5"]
    assert parsing.parse_fields("ACK VERSION 1.0.7\r") == ["1.0.7"]


def test_parse_fields_scalar_wrong_token_count() -> None:
    assert parsing.parse_fields("ACK VOLUME") is None
    assert parsing.parse_fields("ACK VOLUME 5 6") is None


def test_parse_fields_channel_info() -> None:
    fields = parsing.parse_fields('ACK CH_INFO 1 (7) "MXA910-G" "Automix Out" "Podium"')
    assert fields == ["7", "1", "MXA910-G", "Automix Out", "Podium"]


def test_parse_fields_channel_info_empty_and_missing_names() -> None:
    fields = parsing.parse_fields('ACK CH_INFO 0 (16) "" "" "No Channel Assigned"')
    assert fields == ["16", "0", "", "", "No Channel Assigned"]

    fields = parsing.parse_fields('ACK CH_INFO 1 (2) "Stage Box"')
    assert fields == ["2", "1", "Stage Box", "", ""]


def test_parse_fields_channel_info_parentheses_in_name() -> None:
    fields = parsing.parse_fields('ACK CH_INFO 1 (9) "Mic (2)" "Ch 1" "Lectern"')
    assert fields[0] == "9"
    assert fields[2] == "Mic (2)"


def test_parse_fields_channel_info_without_index() -> None:
    assert parsing.parse_fields('ACK CH_INFO 1 "Dev" "Ch" "Disp"') is None


def test_decode_response_tags() -> None:
    result = parsing.decode_response(b"ACK VOLUME 5\r\x00\x00")
    assert isinstance(result, Acknowledged)
    assert result.fields == ("5",)

    assert isinstance(parsing.decode_response("NACK\r"), NotAcknowledged)

    malformed = parsing.decode_response("ACK\r")
    assert isinstance(malformed, Malformed)
    assert malformed.raw == "ACK"


def test_decode_response_checks_echo() -> None:
    result = parsing.decode_response("ACK SET_VOLUME 4\r", "SET_VOLUME")
    assert isinstance(result, Acknowledged)
    assert result.fields == ("4",)

    channel = parsing.decode_response('ACK CH_INFO 1 (6) "A" "B" "C"\r', "CH_INFO")
    assert isinstance(channel, Acknowledged)

    # An answer to an earlier request is not an acknowledgement of this one
    stale = parsing.decode_response('ACK CH_INFO 1 (5) "A" "B" "C"\r', "SET_VOLUME")
    assert isinstance(stale, Malformed)
    assert "CH_INFO" in stale.reason

    assert isinstance(parsing.decode_response("ACK\r", "VOLUME"), Malformed)


def test_parse_channel_record() -> None:
    record = parsing.parse_channel_record(["3", "1", "MXA910-C", "Automix Out", "Automix Out"])
    assert record.index == 3
    assert record.enabled is True
    assert record.device_name == "MXA910-C"
    assert record.display_name == "Automix Out"


@pytest.mark.parametrize(
    "fields",
    [
        ["x", "1", "a", "b", "c"],
        ["3", "2", "a", "b", "c"],
        ["65", "1", "a", "b", "c"],
        ["3", "1", "a"],
    ],
)
def test_parse_channel_record_rejects_bad_fields(fields) -> None:
    with pytest.raises(InvalidResponse):
        parsing.parse_channel_record(fields)


def test_parse_int_value() -> None:
    assert parsing.parse_int_value(Acknowledged("ACK VOLUME 7", ("7",))) == 7

    with pytest.raises(InvalidResponse):
        parsing.parse_int_value(Acknowledged("ACK VOLUME x", ("x",)))


def test_parse_channel_filter_drops_invalid_tokens() -> None:
    assert parsing.parse_channel_filter("1,2,3,@") == (1, 2, 3)


def test_parse_channel_filter_keeps_order_and_dedups() -> None:
    assert parsing.parse_channel_filter(" 3, 1 ,3,65,0,-2") == (3, 1)
    assert parsing.parse_channel_filter("1,,2") == (1, 2)


@pytest.mark.parametrize("text", [None, "", "   ", "@,x", "0,65"])
def test_parse_channel_filter_nothing_valid_means_no_filter(text) -> None:
    assert parsing.parse_channel_filter(text) is None
