"""Pure functions for encoding requests and decoding device responses."""

import logging
from typing import List, Optional, Sequence, Tuple, Union

from undnemo_lib import protocol
from undnemo_lib.errors import InvalidResponse
from undnemo_lib.models import (
    Acknowledged,
    ChannelRecord,
    Malformed,
    NotAcknowledged,
    Response,
)

logger = logging.getLogger(__name__)


def encode_request(command: str, *args: object) -> bytes:
    """Build a request line: <COMMAND>[ <ARG>...] followed by a single CR.

    Args:
        command: Wire command name (e.g. "CH_INFO")
        *args: Optional arguments, converted with str()

    Returns:
        ASCII bytes ready to send
    """
    text = " ".join([command, *(str(arg) for arg in args)])
    return text.encode(protocol.ENCODING) + protocol.REQUEST_TERMINATOR


def _to_text(raw: Union[bytes, str]) -> str:
    if isinstance(raw, bytes):
        raw = raw.decode(protocol.ENCODING, errors="replace")
    # UDP buffers may come back NUL padded
    return raw.rstrip(protocol.RESPONSE_TERMINATORS + "\x00")


def classify(raw: Union[bytes, str]) -> Union[Acknowledged, NotAcknowledged]:
    """Classify a raw response as acknowledged or not.

    A response is acknowledged iff its first token is exactly ACK. Anything
    else (NACK, error text, garbage) is not acknowledged, whatever it says.

    Args:
        raw: Response bytes or text

    Returns:
        Acknowledged carrying the payload (fields not yet parsed), or
        NotAcknowledged
    """
    text = _to_text(raw)
    tokens = text.split()
    if tokens and tokens[0] == protocol.ACK:
        return Acknowledged(payload=text)
    return NotAcknowledged(raw=text)


def parse_fields(payload: Union[bytes, str]) -> Optional[List[str]]:
    """Extract positional fields from an acknowledged payload.

    Channel info payloads (containing the CH_INFO token):
        ACK CH_INFO <enable> (<index>) "<device>" "<channel>" "<display>"
        -> [index, enable, device, channel, display]
        Missing quoted names become "".

    All other payloads must be exactly three tokens:
        ACK <ECHO> <value> -> [value]

    Args:
        payload: Acknowledged response text

    Returns:
        List of field strings, or None if the payload has the wrong shape.
        Callers treat None as not acknowledged.
    """
    text = _to_text(payload)
    tokens = text.split()

    if protocol.CHANNEL_INFO_MARKER in tokens:
        marker_pos = tokens.index(protocol.CHANNEL_INFO_MARKER)
        if marker_pos + 1 >= len(tokens):
            return None

        match = protocol.RE_CHANNEL_INDEX.search(text)
        if not match:
            return None

        names = protocol.RE_QUOTED.findall(text)[: protocol.CHANNEL_NAME_FIELDS]
        names += [""] * (protocol.CHANNEL_NAME_FIELDS - len(names))
        return [match.group(1), tokens[marker_pos + 1], *names]

    if len(tokens) != protocol.SCALAR_RESPONSE_TOKENS:
        return None

    return [tokens[2]]


def decode_response(raw: Union[bytes, str], command: Optional[str] = None) -> Response:
    """Classify and tokenize a response in one step.

    Args:
        raw: Response bytes or text
        command: Command the response should echo. An ACK echoing any other
                 command answers an earlier request and is Malformed.

    Returns:
        Acknowledged with fields, NotAcknowledged, or Malformed when the
        response was acknowledged but its fields could not be extracted
    """
    result = classify(raw)
    if isinstance(result, NotAcknowledged):
        return result

    if command is not None:
        tokens = result.payload.split()
        echo = tokens[1] if len(tokens) > 1 else ""
        if echo != command:
            return Malformed(raw=result.payload, reason=f"echoes {echo!r}, expected {command!r}")

    fields = parse_fields(result.payload)
    if fields is None:
        return Malformed(raw=result.payload, reason="unexpected field layout")

    return Acknowledged(payload=result.payload, fields=tuple(fields))


def parse_channel_record(fields: Sequence[str]) -> ChannelRecord:
    """Build a ChannelRecord from channel info fields.

    Args:
        fields: [index, enable, device, channel, display] as produced by
                parse_fields()

    Returns:
        ChannelRecord

    Raises:
        InvalidResponse: If index or enable state are not valid
    """
    if len(fields) != 2 + protocol.CHANNEL_NAME_FIELDS:
        raise InvalidResponse(f"Channel info needs 5 fields, got {list(fields)!r}")

    index_str, enable_str, device_name, channel_name, display_name = fields

    try:
        index = int(index_str)
    except ValueError as e:
        raise InvalidResponse(f"Channel index is not a number: {index_str!r}") from e

    if enable_str not in ("0", "1"):
        raise InvalidResponse(f"Channel enable state must be 0 or 1, got {enable_str!r}")

    try:
        return ChannelRecord(
            index=index,
            enabled=enable_str == "1",
            device_name=device_name,
            channel_name=channel_name,
            display_name=display_name,
        )
    except ValueError as e:
        raise InvalidResponse(str(e)) from e


def parse_int_value(response: Acknowledged) -> int:
    """Read the single integer value of a scalar response.

    Raises:
        InvalidResponse: If the response has no integer value
    """
    if len(response.fields) != 1:
        raise InvalidResponse(f"Expected one value in {response.payload!r}")

    try:
        return int(response.fields[0])
    except ValueError as e:
        raise InvalidResponse(f"Value is not an integer in {response.payload!r}") from e


def parse_channel_filter(text: Optional[str]) -> Optional[Tuple[int, ...]]:
    """Parse a comma-separated channel index filter.

    Tokens that are not integers in 1-64 are dropped, duplicates keep their
    first position. "1,2,3,@" -> (1, 2, 3).

    Args:
        text: Raw filter string from configuration, may be None or empty

    Returns:
        Tuple of unique indices in configured order, or None if nothing valid
        remains (meaning: no filter, poll every channel)
    """
    if not text or not text.strip():
        return None

    indices: List[int] = []
    for token in text.split(","):
        token = token.strip()
        if not token:
            continue

        try:
            index = int(token)
        except ValueError:
            logger.debug(f"Dropping non-numeric channel filter token {token!r}")
            continue

        if not (protocol.MIN_CHANNEL_INDEX <= index <= protocol.MAX_CHANNEL_INDEX):
            logger.debug(f"Dropping out-of-range channel filter token {token!r}")
            continue

        if index not in indices:
            indices.append(index)

    if not indices:
        logger.warning(f"Channel filter {text!r} has no valid index, polling all channels")
        return None

    return tuple(indices)
