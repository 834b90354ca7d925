"""Test the pkt-line codec."""

import pytest

from gitd.pktline import pkt_flush, pkt_line, read_pkt_line, service_preamble

from . import RECEIVE_PACK_PREAMBLE, UPLOAD_PACK_PREAMBLE


def test_pkt_line_examples():
    """Test the examples from the git protocol documentation."""
    assert pkt_line("a\n") == b"0006a\n"
    assert pkt_line("a") == b"0005a"
    assert pkt_line("foobar\n") == b"000bfoobar\n"
    assert pkt_line(b"# service=git-upload-pack\n") == b"001e# service=git-upload-pack\n"


def test_empty_payload():
    """Test that an empty payload only carries its own length."""
    assert pkt_line("") == b"0004"
    assert pkt_flush() == b"0000"


def test_lowercase_hex_length():
    """Test that the length is rendered in lowercase hex."""
    frame = pkt_line("x" * 250)
    assert frame[:4] == b"00fe"


def test_long_payload_is_padded_to_multiple_of_four_digits():
    """Test lengths that need more than four hex digits."""
    frame = pkt_line("x" * (0x10000 - 4))
    assert frame[:8] == b"00010000"
    assert len(frame) == 8 + 0x10000 - 4


def test_service_preamble():
    """Test the announcement sent before a ref advertisement."""
    assert service_preamble("git-upload-pack") == UPLOAD_PACK_PREAMBLE
    assert service_preamble("git-receive-pack") == RECEIVE_PACK_PREAMBLE


@pytest.mark.parametrize(
    "payload",
    ["", "a", "# service=git-upload-pack\n", "want 0123456789abcdef\n", "é ünïcode\n"],
)
def test_read_back_encoded_frame(payload):
    """Test that the header describes the frame that follows it."""
    data, rest = read_pkt_line(pkt_line(payload) + b"tail")
    assert data == payload.encode("utf-8")
    assert rest == b"tail"


def test_read_flush():
    """Test reading a flush packet."""
    data, rest = read_pkt_line(UPLOAD_PACK_PREAMBLE[30:] + b"more")
    assert data is None
    assert rest == b"more"


@pytest.mark.parametrize("data", [b"00", b"zzzz", b"0003", b"000aabc"])
def test_read_invalid_frames(data):
    """Test that malformed or truncated frames are rejected."""
    with pytest.raises(ValueError):
        read_pkt_line(data)
