"""
NTS-KE Record Codec (RFC 8915 section 4)

Every record is framed as:

  +-+------------------------------+------------------------------+
  |C|     Record Type (15 bits)    |       Body Length (16 bits)  |
  +-+------------------------------+------------------------------+
  |                     Record Body (Body Length bytes)           |
  +---------------------------------------------------------------+

NtsKeRecord keeps the body as raw bytes so unknown or malformed records can
be produced and inspected; typed accessors decode on demand.
"""
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional

from ntp_pester.exceptions import InvalidRecord

RECORD_HEADER_LEN = 4
CRITICAL_BIT = 0x8000

_RECORD_HEADER = struct.Struct(">HH")


class RecordType(IntEnum):
    END_OF_MESSAGE = 0
    NEXT_PROTOCOL = 1
    ERROR = 2
    WARNING = 3
    AEAD_ALGORITHM = 4
    NEW_COOKIE = 5
    SERVER = 6
    PORT = 7


class NextProtocol(IntEnum):
    NTPV4 = 0


class ErrorCode(IntEnum):
    UNRECOGNIZED_CRITICAL_RECORD = 0
    BAD_REQUEST = 1
    INTERNAL_SERVER_ERROR = 2


_KNOWN_RECORD_TYPES = frozenset(t.value for t in RecordType)


def _u16_list(values: List[int]) -> bytes:
    return b"".join(struct.pack(">H", v & 0xFFFF) for v in values)


@dataclass(frozen=True)
class NtsKeRecord:
    """A single NTS-KE record"""

    record_type: int
    critical: bool = False
    body: bytes = b""

    # Constructors

    @classmethod
    def end_of_message(cls) -> "NtsKeRecord":
        return cls(RecordType.END_OF_MESSAGE, critical=True)

    @classmethod
    def next_protocol(cls, protocol_ids: List[int]) -> "NtsKeRecord":
        return cls(RecordType.NEXT_PROTOCOL, critical=True, body=_u16_list(protocol_ids))

    @classmethod
    def aead_algorithm(cls, algorithm_ids: List[int], critical: bool = False) -> "NtsKeRecord":
        return cls(RecordType.AEAD_ALGORITHM, critical=critical, body=_u16_list(algorithm_ids))

    @classmethod
    def error(cls, code: int) -> "NtsKeRecord":
        return cls(RecordType.ERROR, critical=True, body=struct.pack(">H", code))

    @classmethod
    def warning(cls, code: int) -> "NtsKeRecord":
        return cls(RecordType.WARNING, critical=True, body=struct.pack(">H", code))

    @classmethod
    def new_cookie(cls, cookie: bytes) -> "NtsKeRecord":
        return cls(RecordType.NEW_COOKIE, critical=False, body=bytes(cookie))

    @classmethod
    def server(cls, name: str, critical: bool = False) -> "NtsKeRecord":
        return cls(RecordType.SERVER, critical=critical, body=name.encode("ascii"))

    @classmethod
    def port(cls, port: int, critical: bool = False) -> "NtsKeRecord":
        return cls(RecordType.PORT, critical=critical, body=struct.pack(">H", port))

    # Accessors

    @property
    def is_known(self) -> bool:
        return self.record_type in _KNOWN_RECORD_TYPES

    @property
    def is_end_of_message(self) -> bool:
        return self.record_type == RecordType.END_OF_MESSAGE

    def u16_list(self) -> List[int]:
        """Body as a list of 16 bit ids (Next Protocol, AEAD)."""
        if len(self.body) % 2:
            raise InvalidRecord(
                f"Record type {self.record_type} has odd body length {len(self.body)}",
                details={"record_type": self.record_type},
            )
        return [v for (v,) in struct.iter_unpack(">H", self.body)]

    def u16(self) -> int:
        """Body as a single 16 bit value (Error, Warning, Port)."""
        if len(self.body) != 2:
            raise InvalidRecord(
                f"Record type {self.record_type} needs a 2 byte body, got {len(self.body)}",
                details={"record_type": self.record_type},
            )
        return struct.unpack(">H", self.body)[0]

    def text(self) -> str:
        """Body as ASCII text (Server)."""
        try:
            return self.body.decode("ascii")
        except UnicodeDecodeError:
            raise InvalidRecord("Server record is not ASCII", details={"body": self.body.hex()})

    def encode(self, body_length: Optional[int] = None) -> bytes:
        """
        Serialize the record.

        body_length overrides the length written on the wire, for
        malformed-record tests.
        """
        type_field = (self.record_type & 0x7FFF) | (CRITICAL_BIT if self.critical else 0)
        length = len(self.body) if body_length is None else body_length
        return _RECORD_HEADER.pack(type_field, length & 0xFFFF) + self.body

    def __repr__(self) -> str:
        try:
            name = RecordType(self.record_type).name
        except ValueError:
            name = str(self.record_type)
        flag = "!" if self.critical else ""
        return f"NtsKeRecord({flag}{name}, {self.body.hex()})"


def encode_records(records: List[NtsKeRecord]) -> bytes:
    return b"".join(r.encode() for r in records)


class NtsRecordDecoder:
    """
    Incremental record decoder.

    Feed raw stream bytes with feed() and pull complete records with
    next_record(), which returns None while a record is still incomplete.
    """

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    @property
    def pending(self) -> int:
        """Bytes buffered that do not yet form a complete record"""
        return len(self._buffer)

    def next_record(self) -> Optional[NtsKeRecord]:
        if len(self._buffer) < RECORD_HEADER_LEN:
            return None
        type_field, length = _RECORD_HEADER.unpack_from(self._buffer)
        end = RECORD_HEADER_LEN + length
        if len(self._buffer) < end:
            return None
        body = bytes(self._buffer[RECORD_HEADER_LEN:end])
        del self._buffer[:end]
        return NtsKeRecord(
            record_type=type_field & 0x7FFF,
            critical=bool(type_field & CRITICAL_BIT),
            body=body,
        )


def decode_records(data: bytes) -> List[NtsKeRecord]:
    """
    Decode a complete byte string into records.

    Raises:
        InvalidRecord: If data ends inside a record
    """
    decoder = NtsRecordDecoder()
    decoder.feed(data)
    records = []
    while True:
        record = decoder.next_record()
        if record is None:
            break
        records.append(record)
    if decoder.pending:
        raise InvalidRecord(
            f"{decoder.pending} trailing bytes do not form a complete record",
            details={"pending": decoder.pending},
        )
    return records
