"""
Tests for the NTS-KE client.

Tests cover:
- Request serialization
- Bounded response collection and its error paths
- Negotiation checks in do_request
- Key derivation through the TLS exporter
"""
import struct
from typing import List

import pytest

from ntp_pester.engine.nts_crypto import AeadAlgorithm
from ntp_pester.engine.nts_ke import EXPORTER_LABEL, NtsKeConnection, NtsKeRequest
from ntp_pester.engine.nts_records import NtsKeRecord, decode_records, encode_records
from ntp_pester.exceptions import (
    EmptyMessage,
    NtsKeNegotiationError,
    NtsKeProtocolError,
    NtsKeServerError,
    UnexpectedClose,
    UnknownAead,
    UnknownCriticalRecord,
    UnknownNextProtocol,
)


class FakeStream:
    """In-memory stand-in for a TLS stream that replays canned chunks"""

    def __init__(self, *chunks: bytes):
        self.chunks: List[bytes] = list(chunks)
        self.sent = bytearray()
        self.exports = []
        self.closed = False

    async def send(self, data: bytes) -> None:
        self.sent.extend(data)

    async def receive(self, max_bytes=None) -> bytes:
        return self.chunks.pop(0) if self.chunks else b""

    def export_keying_material(self, label: bytes, length: int, context: bytes) -> bytes:
        self.exports.append((label, length, context))
        return bytes([context[-1] + 1]) * length

    async def close(self) -> None:
        self.closed = True


def _reply(*records: NtsKeRecord) -> bytes:
    return encode_records(list(records) + [NtsKeRecord.end_of_message()])


def _happy_records(cookies: int = 8):
    return [
        NtsKeRecord.next_protocol([0]),
        NtsKeRecord.aead_algorithm([15]),
        *[NtsKeRecord.new_cookie(bytes([i]) * 64) for i in range(cookies)],
    ]


class TestExchange:
    """Tests for sending a request and collecting the response."""

    @pytest.mark.asyncio
    async def test_default_request(self):
        """Test that the default request proposes NTPv4 and AES-SIV-CMAC-256."""
        stream = FakeStream(_reply(*_happy_records()))
        ke = NtsKeConnection(stream, "ke.example")

        await ke.exchange(NtsKeRequest())

        assert decode_records(bytes(stream.sent)) == [
            NtsKeRecord.next_protocol([0]),
            NtsKeRecord.aead_algorithm([15]),
            NtsKeRecord.end_of_message(),
        ]

    @pytest.mark.asyncio
    async def test_happy_response(self):
        """Test that a normal response is parsed completely."""
        ke = NtsKeConnection(FakeStream(_reply(*_happy_records())), "ke.example")

        response = await ke.exchange(NtsKeRequest())

        assert response.next_protocol == [0]
        assert response.aead == [15]
        assert len(response.cookies) == 8
        assert response.errors == []

    @pytest.mark.asyncio
    async def test_response_split_across_reads(self):
        """Test that records arriving in arbitrary chunks are reassembled."""
        data = _reply(*_happy_records(2))
        chunks = [data[i:i + 5] for i in range(0, len(data), 5)]
        ke = NtsKeConnection(FakeStream(*chunks), "ke.example")

        response = await ke.exchange(NtsKeRequest())

        assert len(response.cookies) == 2

    @pytest.mark.asyncio
    async def test_raw_records_are_sent_as_given(self):
        """Test that a plain record list is sent without additions."""
        stream = FakeStream(_reply(NtsKeRecord.error(1)))
        ke = NtsKeConnection(stream, "ke.example")

        response = await ke.exchange([NtsKeRecord.end_of_message()])

        assert bytes(stream.sent) == b"\x80\x00\x00\x00"
        assert response.errors == [1]

    @pytest.mark.asyncio
    async def test_end_of_message_only(self):
        """Test that an EOM-only response is an EmptyMessage, not a hang."""
        ke = NtsKeConnection(FakeStream(_reply()), "ke.example")

        with pytest.raises(EmptyMessage):
            await ke.exchange(NtsKeRequest())

    @pytest.mark.asyncio
    async def test_closed_before_any_record(self):
        """Test that a stream closed without data is an EmptyMessage."""
        ke = NtsKeConnection(FakeStream(), "ke.example")

        with pytest.raises(EmptyMessage):
            await ke.exchange(NtsKeRequest())

    @pytest.mark.asyncio
    async def test_closed_before_end_of_message(self):
        """Test that a missing End of Message is an UnexpectedClose."""
        data = encode_records(_happy_records(1))
        ke = NtsKeConnection(FakeStream(data), "ke.example")

        with pytest.raises(UnexpectedClose):
            await ke.exchange(NtsKeRequest())

    @pytest.mark.asyncio
    async def test_closed_inside_record(self):
        """Test that a stream ending in the middle of a record is an UnexpectedClose."""
        data = encode_records([NtsKeRecord.next_protocol([0])]) + b"\x00\x05\x00\x40abc"
        ke = NtsKeConnection(FakeStream(data), "ke.example")

        with pytest.raises(UnexpectedClose):
            await ke.exchange(NtsKeRequest())

    @pytest.mark.asyncio
    async def test_unknown_non_critical_record_ignored(self):
        """Test that an unknown non-critical record does not abort the exchange."""
        unknown = NtsKeRecord(0x2A2A, critical=False, body=b"extra")
        ke = NtsKeConnection(FakeStream(_reply(unknown, *_happy_records(1))), "ke.example")

        response = await ke.exchange(NtsKeRequest())

        assert response.ignored == [unknown]
        assert response.next_protocol == [0]

    @pytest.mark.asyncio
    async def test_unknown_critical_record(self):
        """Test that an unknown critical record raises UnknownCriticalRecord."""
        unknown = NtsKeRecord(0x2A2A, critical=True)
        ke = NtsKeConnection(FakeStream(_reply(unknown)), "ke.example")

        with pytest.raises(UnknownCriticalRecord):
            await ke.exchange(NtsKeRequest())

    @pytest.mark.asyncio
    async def test_record_limit(self):
        """Test that a response longer than the bound is rejected."""
        ke = NtsKeConnection(FakeStream(_reply(*_happy_records(8))), "ke.example", max_records=4)

        with pytest.raises(NtsKeProtocolError):
            await ke.exchange(NtsKeRequest())

    @pytest.mark.asyncio
    async def test_close_closes_stream(self):
        """Test that leaving the context closes the stream."""
        stream = FakeStream()

        async with NtsKeConnection(stream, "ke.example"):
            pass

        assert stream.closed is True


class TestDoRequest:
    """Tests for key establishment on top of the exchange."""

    @pytest.mark.asyncio
    async def test_key_material(self):
        """Test cookies, keys and NTP address of a normal handshake."""
        stream = FakeStream(_reply(*_happy_records()))
        ke = NtsKeConnection(stream, "ke.example")

        material = await ke.do_request()

        assert material.aead == AeadAlgorithm.AEAD_AES_SIV_CMAC_256
        assert len(material.cookies) == 8
        assert material.ntp_host == "ke.example"
        assert material.ntp_port == 123
        assert material.keys.c2s.key == b"\x01" * 32
        assert material.keys.s2c.key == b"\x02" * 32

    @pytest.mark.asyncio
    async def test_exporter_contexts(self):
        """Test exporter label and per-direction context."""
        stream = FakeStream(_reply(*_happy_records()))

        await NtsKeConnection(stream, "ke.example").do_request()

        assert stream.exports == [
            (EXPORTER_LABEL, 32, struct.pack(">HHB", 0, 15, 0)),
            (EXPORTER_LABEL, 32, struct.pack(">HHB", 0, 15, 1)),
        ]

    @pytest.mark.asyncio
    async def test_server_and_port_redirect(self):
        """Test that Server/Port records replace the NTP address."""
        records = _happy_records() + [NtsKeRecord.server("ntp.example"), NtsKeRecord.port(1123)]
        ke = NtsKeConnection(FakeStream(_reply(*records)), "ke.example")

        material = await ke.do_request()

        assert (material.ntp_host, material.ntp_port) == ("ntp.example", 1123)

    @pytest.mark.asyncio
    async def test_error_wins_over_redirect(self):
        """Test that Error records are reported even with Server/Port present."""
        records = _happy_records() + [NtsKeRecord.server("ntp.example"), NtsKeRecord.error(2)]
        ke = NtsKeConnection(FakeStream(_reply(*records)), "ke.example")

        with pytest.raises(NtsKeServerError) as exc_info:
            await ke.do_request()

        assert exc_info.value.codes == [2]

    @pytest.mark.asyncio
    async def test_unknown_next_protocol(self):
        """Test that an unexpected next protocol has its own error kind."""
        records = [NtsKeRecord.next_protocol([]), NtsKeRecord.aead_algorithm([15]), NtsKeRecord.new_cookie(b"c" * 8)]
        ke = NtsKeConnection(FakeStream(_reply(*records)), "ke.example")

        with pytest.raises(UnknownNextProtocol):
            await ke.do_request()

    @pytest.mark.asyncio
    async def test_unknown_aead(self):
        """Test that an AEAD we did not propose has its own error kind."""
        records = [NtsKeRecord.next_protocol([0]), NtsKeRecord.aead_algorithm([16]), NtsKeRecord.new_cookie(b"c" * 8)]
        ke = NtsKeConnection(FakeStream(_reply(*records)), "ke.example")

        with pytest.raises(UnknownAead):
            await ke.do_request()

    @pytest.mark.asyncio
    async def test_missing_cookies(self):
        """Test that a handshake without cookies is unusable."""
        ke = NtsKeConnection(FakeStream(_reply(*_happy_records(0))), "ke.example")

        with pytest.raises(NtsKeNegotiationError):
            await ke.do_request()

    @pytest.mark.asyncio
    async def test_missing_aead_record(self):
        """Test that a response without AEAD record fails negotiation."""
        records = [NtsKeRecord.next_protocol([0]), NtsKeRecord.new_cookie(b"c" * 8)]
        ke = NtsKeConnection(FakeStream(_reply(*records)), "ke.example")

        with pytest.raises(NtsKeNegotiationError):
            await ke.do_request()
