"""
Tests for the NTS-KE record codec and response folding.
"""
import pytest

from ntp_pester.engine.nts_ke import NtsKeRequest, NtsKeResponse
from ntp_pester.engine.nts_records import (
    CRITICAL_BIT,
    NtsKeRecord,
    NtsRecordDecoder,
    RecordType,
    decode_records,
    encode_records,
)
from ntp_pester.exceptions import (
    InvalidRecord,
    NtsKeNegotiationError,
    UnknownCriticalRecord,
)


class TestRecordEncoding:
    """Tests for single record serialization."""

    def test_end_of_message(self):
        """Test that End of Message is a critical empty record."""
        assert NtsKeRecord.end_of_message().encode() == b"\x80\x00\x00\x00"

    def test_next_protocol(self):
        """Test Next Protocol encoding with the critical bit."""
        assert NtsKeRecord.next_protocol([0]).encode() == b"\x80\x01\x00\x02\x00\x00"

    def test_aead_not_critical_by_default(self):
        """Test that the AEAD record is sent without the critical bit."""
        data = NtsKeRecord.aead_algorithm([15, 0xFFFF]).encode()

        assert data == b"\x00\x04\x00\x04\x00\x0f\xff\xff"

    def test_body_length_override(self):
        """Test that the written body length can be forced."""
        data = NtsKeRecord.port(123).encode(body_length=9)

        assert data[2:4] == b"\x00\x09"
        assert len(data) == 6

    def test_unknown_type_keeps_critical_flag(self):
        """Test the critical bit on an arbitrary type."""
        record = NtsKeRecord(0x4000, critical=True, body=b"x")

        assert record.encode()[:2] == (0x4000 | CRITICAL_BIT).to_bytes(2, "big")
        assert record.is_known is False


class TestRecordDecoding:
    """Tests for incremental and complete decoding."""

    def test_round_trip(self):
        """Test that a full request decodes back into the same records."""
        records = NtsKeRequest(server="ntp.example.org", port=1234).records()

        assert decode_records(encode_records(records)) == records

    def test_incremental_feed(self):
        """Test that records split over several chunks are reassembled."""
        data = encode_records([NtsKeRecord.new_cookie(b"c" * 40), NtsKeRecord.end_of_message()])
        decoder = NtsRecordDecoder()

        decoder.feed(data[:3])
        assert decoder.next_record() is None
        decoder.feed(data[3:20])
        assert decoder.next_record() is None
        decoder.feed(data[20:])

        assert decoder.next_record() == NtsKeRecord.new_cookie(b"c" * 40)
        assert decoder.next_record() == NtsKeRecord.end_of_message()
        assert decoder.next_record() is None
        assert decoder.pending == 0

    def test_trailing_bytes(self):
        """Test that an incomplete trailing record is reported."""
        data = encode_records([NtsKeRecord.end_of_message()]) + b"\x00\x01\x00"

        with pytest.raises(InvalidRecord):
            decode_records(data)

    def test_odd_u16_list(self):
        """Test that an odd-length protocol list is malformed."""
        with pytest.raises(InvalidRecord):
            NtsKeRecord(RecordType.NEXT_PROTOCOL, True, b"\x00\x00\x01").u16_list()

    def test_u16_needs_two_bytes(self):
        """Test that Error/Warning/Port bodies must be exactly two bytes."""
        with pytest.raises(InvalidRecord):
            NtsKeRecord(RecordType.PORT, False, b"\x00").u16()

    def test_server_must_be_ascii(self):
        """Test that a non-ASCII server name is malformed."""
        with pytest.raises(InvalidRecord):
            NtsKeRecord(RecordType.SERVER, False, "zeit.bär".encode()).text()


class TestResponseFolding:
    """Tests for NtsKeResponse.from_records."""

    def test_collects_all_fields(self):
        """Test that every known record lands in its field."""
        response = NtsKeResponse.from_records([
            NtsKeRecord.next_protocol([0]),
            NtsKeRecord.aead_algorithm([15]),
            NtsKeRecord.new_cookie(b"a" * 8),
            NtsKeRecord.new_cookie(b"b" * 8),
            NtsKeRecord.warning(7),
            NtsKeRecord.server("time.example.org"),
            NtsKeRecord.port(4123),
        ])

        assert response.next_protocol == [0]
        assert response.aead == [15]
        assert response.cookies == [b"a" * 8, b"b" * 8]
        assert response.warnings == [7]
        assert response.errors == []
        assert response.server == "time.example.org"
        assert response.port == 4123

    def test_unknown_non_critical_is_ignored(self):
        """Test that unknown non-critical records are kept aside."""
        unknown = NtsKeRecord(0x1234, critical=False, body=b"zz")

        response = NtsKeResponse.from_records([NtsKeRecord.next_protocol([0]), unknown])

        assert response.next_protocol == [0]
        assert response.ignored == [unknown]

    def test_unknown_critical_raises(self):
        """Test that unknown critical records abort parsing."""
        with pytest.raises(UnknownCriticalRecord) as exc_info:
            NtsKeResponse.from_records([NtsKeRecord(0x1234, critical=True)])

        assert exc_info.value.record_type == 0x1234

    @pytest.mark.parametrize("record", [
        NtsKeRecord.next_protocol([0]),
        NtsKeRecord.aead_algorithm([15]),
        NtsKeRecord.server("a.example"),
        NtsKeRecord.port(123),
    ])
    def test_duplicates_rejected(self, record):
        """Test that single-valued records may only appear once."""
        with pytest.raises(NtsKeNegotiationError):
            NtsKeResponse.from_records([record, record])

    def test_empty_protocol_list(self):
        """Test that an empty Next Protocol record yields an empty list, not None."""
        response = NtsKeResponse.from_records([NtsKeRecord.next_protocol([])])

        assert response.next_protocol == []
