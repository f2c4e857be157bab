from __future__ import annotations

import pytest

from teamdeck.ring_buffer import OutputRingBuffer


def test_keeps_everything_under_capacity() -> None:
    buffer = OutputRingBuffer(16)
    buffer.append(b"hello ")
    buffer.append(b"world")
    assert buffer.getvalue() == b"hello world"
    assert len(buffer) == 11


def test_evicts_oldest_bytes_and_keeps_exact_tail() -> None:
    buffer = OutputRingBuffer(8)
    stream = b""
    for chunk in (b"abc", b"defgh", b"ij", b"klmnopq", b"r"):
        buffer.append(chunk)
        stream += chunk
        assert len(buffer) <= 8
        assert buffer.getvalue() == stream[-8:]
    assert buffer.total_written == len(stream)


def test_chunk_larger_than_capacity_keeps_its_tail() -> None:
    buffer = OutputRingBuffer(4)
    buffer.append(b"xy")
    buffer.append(b"0123456789")
    assert buffer.getvalue() == b"6789"


def test_text_skips_partial_leading_character_after_eviction() -> None:
    buffer = OutputRingBuffer(4)
    # "€" is three bytes; eviction leaves only its last byte at the front.
    buffer.append("a€".encode("utf-8"))
    buffer.append(b"bcd")
    assert buffer.getvalue() == b"\xacbcd"
    assert buffer.text() == "bcd"


def test_text_without_eviction_decodes_everything() -> None:
    buffer = OutputRingBuffer(32)
    buffer.append("naïve €".encode("utf-8"))
    assert buffer.text() == "naïve €"


def test_clear_and_invalid_capacity() -> None:
    buffer = OutputRingBuffer(4)
    buffer.append(b"abc")
    buffer.clear()
    assert buffer.getvalue() == b""

    with pytest.raises(ValueError):
        OutputRingBuffer(0)
