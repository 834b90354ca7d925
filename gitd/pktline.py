"""Git pkt-line framing.

A pkt-line is a hex length prefix followed by the payload. The length
counts the prefix itself; the special frame ``0000`` is a flush packet.

Reference: https://git-scm.com/docs/protocol-common#_pkt_line_format
"""

from typing import Optional, Tuple, Union

FLUSH_PKT = b"0000"


def pkt_line(payload: Union[str, bytes]) -> bytes:
    """Format payload as a pkt-line.

    The length is rendered as lowercase hex and left-padded with zeros to a
    multiple of 4 digits, so the prefix is never shorter than 4 characters.
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    length = f"{len(payload) + 4:x}"
    remainder = len(length) % 4
    if remainder:
        length = "0" * (4 - remainder) + length
    return length.encode("ascii") + payload


def pkt_flush() -> bytes:
    """Return a flush packet (0000)."""
    return FLUSH_PKT


def service_preamble(service: str) -> bytes:
    """Return the announcement that precedes a smart HTTP ref advertisement."""
    return pkt_line(f"# service={service}\n") + pkt_flush()


def read_pkt_line(data: bytes) -> Tuple[Optional[bytes], bytes]:
    """Read one pkt-line from the start of a buffer.

    Returns:
        Tuple of (payload, rest). The payload is None for a flush packet.

    Raises:
        ValueError: If the length header is malformed or the frame is truncated.
    """
    if len(data) < 4:
        raise ValueError(f"Incomplete pkt-line header: {data!r}")
    try:
        length = int(data[:4], 16)
    except ValueError:
        raise ValueError(f"Invalid pkt-line header: {data[:4]!r}") from None

    if length == 0:
        return None, data[4:]
    if length < 4:
        raise ValueError(f"Invalid pkt-line length: {length}")
    if len(data) < length:
        raise ValueError(
            f"Truncated pkt-line: expected {length} bytes, got {len(data)}"
        )
    return data[4:length], data[length:]
