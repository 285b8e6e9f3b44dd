"""
NTP Packet Codec - Network Time Protocol (RFC 5905) with extension fields (RFC 7822)

PROTOCOL STRUCTURE:
===================
NTP uses a 48-byte header with bit fields in the first byte:

  +------------------+------------------+------------------+------------------+
  | LI|VN|Mode       | Stratum          | Poll             | Precision        |
  +------------------+------------------+------------------+------------------+
  |                        Root Delay (32 bits)                               |
  +------------------+------------------+------------------+------------------+
  |                     Root Dispersion (32 bits)                             |
  +------------------+------------------+------------------+------------------+
  |                     Reference ID (32 bits)                                |
  +------------------+------------------+------------------+------------------+
  |        Reference / Origin / Receive / Transmit Timestamps (4 x 64 bits)   |
  +------------------+------------------+------------------+------------------+
  |        Extension fields: Type (16) | Length (16) | Value (padded to 4)    |
  +------------------+------------------+------------------+------------------+

Two builder surfaces exist on purpose:
  - NtpPacket / ExtensionField.build() produce conforming packets and
    round-trip through decode().
  - RawPacketBuilder and ExtensionField.declared_length let test cases emit
    bytes a conforming encoder would refuse to produce.

encode() never fails: out-of-range header values are masked into their
bit width. decode() only ever raises DecodeError subclasses.
"""
import secrets
import struct
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Iterator, List, Optional, Tuple

from ntp_pester.exceptions import InvalidExtensionLength, TruncatedError, UnsupportedVersion

HEADER_LEN = 48
EF_HEADER_LEN = 4
MIN_EF_LEN = 16
SUPPORTED_VERSIONS = (3, 4)
DEFAULT_POLL = 4
NTP_EPOCH_OFFSET = 2208988800  # seconds between 1900-01-01 and 1970-01-01

_ENCODE_HEADER = struct.Struct(">BBBBII4sQQQQ")
_DECODE_HEADER = struct.Struct(">BBbbII4sQQQQ")
_EF_HEADER = struct.Struct(">HH")


class LeapIndicator(IntEnum):
    NO_WARNING = 0
    LAST_61 = 1
    LAST_59 = 2
    UNSYNCHRONIZED = 3


class Mode(IntEnum):
    RESERVED = 0
    SYMMETRIC_ACTIVE = 1
    SYMMETRIC_PASSIVE = 2
    CLIENT = 3
    SERVER = 4
    BROADCAST = 5
    CONTROL = 6
    PRIVATE = 7


class ExtensionFieldType(IntEnum):
    UNIQUE_IDENTIFIER = 0x0104
    NTS_COOKIE = 0x0204
    NTS_COOKIE_PLACEHOLDER = 0x0304
    NTS_AUTHENTICATOR = 0x0404


_KNOWN_FIELD_TYPES = frozenset(t.value for t in ExtensionFieldType)


def pad_payload(data: bytes, minimum: int = MIN_EF_LEN - EF_HEADER_LEN) -> bytes:
    """Zero-pad an extension field value to a multiple of 4 and the RFC 7822 minimum."""
    padded = data + bytes(-len(data) % 4)
    if len(padded) < minimum:
        padded += bytes(minimum - len(padded))
    return padded


def to_ntp_timestamp(unix_time: float) -> int:
    """Convert a Unix time in seconds into a 64-bit NTP timestamp."""
    seconds = unix_time + NTP_EPOCH_OFFSET
    whole = int(seconds)
    fraction = int((seconds - whole) * (1 << 32))
    return ((whole & 0xFFFFFFFF) << 32) | (fraction & 0xFFFFFFFF)


@dataclass(frozen=True)
class ExtensionField:
    """
    One type-tagged block after the NTP header.

    payload is stored exactly as it appears on the wire (padding included),
    which keeps decode(encode(p)) == p for fields made with build().
    declared_length, when set, replaces the computed length on the wire.
    """

    field_type: int
    payload: bytes = b""
    declared_length: Optional[int] = None

    @classmethod
    def build(cls, field_type: int, data: bytes = b"") -> "ExtensionField":
        return cls(int(field_type), pad_payload(data))

    @classmethod
    def unique_identifier(cls, uid: Optional[bytes] = None) -> "ExtensionField":
        return cls.build(ExtensionFieldType.UNIQUE_IDENTIFIER, uid or secrets.token_bytes(32))

    @classmethod
    def nts_cookie(cls, cookie: bytes) -> "ExtensionField":
        return cls.build(ExtensionFieldType.NTS_COOKIE, cookie)

    @classmethod
    def cookie_placeholder(cls, cookie_length: int) -> "ExtensionField":
        return cls.build(ExtensionFieldType.NTS_COOKIE_PLACEHOLDER, bytes(cookie_length))

    @classmethod
    def authenticator(cls, nonce: bytes, ciphertext: bytes) -> "ExtensionField":
        """Build the NTS Authenticator and Encrypted Extension Fields field (RFC 8915 5.6)."""
        body = (
            _EF_HEADER.pack(len(nonce), len(ciphertext))
            + nonce + bytes(-len(nonce) % 4)
            + ciphertext + bytes(-len(ciphertext) % 4)
        )
        return cls.build(ExtensionFieldType.NTS_AUTHENTICATOR, body)

    @property
    def is_known(self) -> bool:
        return self.field_type in _KNOWN_FIELD_TYPES

    def encode(self) -> bytes:
        body = self.payload + bytes(-len(self.payload) % 4)
        if self.declared_length is None:
            length = EF_HEADER_LEN + len(body)
        else:
            length = self.declared_length
        return _EF_HEADER.pack(self.field_type & 0xFFFF, length & 0xFFFF) + body

    def __repr__(self) -> str:
        try:
            name = ExtensionFieldType(self.field_type).name
        except ValueError:
            name = f"0x{self.field_type:04x}"
        extra = "" if self.declared_length is None else f", declared_length={self.declared_length}"
        return f"ExtensionField({name}, {self.payload.hex()}{extra})"


def iter_extension_fields(data: bytes, offset: int = HEADER_LEN) -> Iterator[Tuple[int, ExtensionField]]:
    """
    Yield (offset, field) for every extension field from offset to the end of data.

    Raises:
        InvalidExtensionLength: If a field header or declared length does not fit
    """
    end = len(data)
    while offset < end:
        remaining = end - offset
        if remaining < EF_HEADER_LEN:
            raise InvalidExtensionLength(
                f"{remaining} trailing bytes cannot hold an extension field header",
                details={"offset": offset},
            )
        field_type, length = _EF_HEADER.unpack_from(data, offset)
        if length < EF_HEADER_LEN or length % 4:
            raise InvalidExtensionLength(
                f"Extension field length {length} is not a valid multiple of 4",
                details={"offset": offset, "length": length},
            )
        if length > remaining:
            raise InvalidExtensionLength(
                f"Extension field length {length} exceeds remaining {remaining} bytes",
                details={"offset": offset, "length": length, "remaining": remaining},
            )
        yield offset, ExtensionField(field_type, bytes(data[offset + EF_HEADER_LEN:offset + length]))
        offset += length


@dataclass(frozen=True)
class RequestIdentifier:
    """What a reply has to echo to count as an answer to a specific request"""

    expected_origin_timestamp: int
    uid: Optional[bytes] = None

    def matches(self, packet: "NtpPacket") -> bool:
        if packet.origin_timestamp != self.expected_origin_timestamp:
            return False
        if self.uid is None:
            return True
        return any(
            ef.payload == self.uid
            for ef in packet.fields_of_type(ExtensionFieldType.UNIQUE_IDENTIFIER)
        )


@dataclass
class NtpPacket:
    """NTP header plus the ordered extension fields that follow it"""

    leap: int = LeapIndicator.NO_WARNING.value
    version: int = 4
    mode: int = Mode.CLIENT.value
    stratum: int = 0
    poll: int = 0
    precision: int = 0
    root_delay: int = 0
    root_dispersion: int = 0
    reference_id: bytes = b"\x00\x00\x00\x00"
    reference_timestamp: int = 0
    origin_timestamp: int = 0
    receive_timestamp: int = 0
    transmit_timestamp: int = 0
    extension_fields: List[ExtensionField] = field(default_factory=list)

    @classmethod
    def poll_message(cls, version: int = 4, poll: int = DEFAULT_POLL) -> Tuple["NtpPacket", RequestIdentifier]:
        """
        Build a client poll request.

        The transmit timestamp is random and doubles as the request identifier,
        a server must echo it as origin timestamp.
        """
        transmit = secrets.randbits(64)
        packet = cls(version=version, mode=Mode.CLIENT.value, poll=poll, transmit_timestamp=transmit)
        return packet, RequestIdentifier(expected_origin_timestamp=transmit)

    def encode_header(self) -> bytes:
        first = ((self.leap & 0x3) << 6) | ((self.version & 0x7) << 3) | (self.mode & 0x7)
        return _ENCODE_HEADER.pack(
            first,
            self.stratum & 0xFF,
            self.poll & 0xFF,
            self.precision & 0xFF,
            self.root_delay & 0xFFFFFFFF,
            self.root_dispersion & 0xFFFFFFFF,
            (bytes(self.reference_id) + bytes(4))[:4],
            self.reference_timestamp & 0xFFFFFFFFFFFFFFFF,
            self.origin_timestamp & 0xFFFFFFFFFFFFFFFF,
            self.receive_timestamp & 0xFFFFFFFFFFFFFFFF,
            self.transmit_timestamp & 0xFFFFFFFFFFFFFFFF,
        )

    def encode(self) -> bytes:
        return self.encode_header() + b"".join(ef.encode() for ef in self.extension_fields)

    @classmethod
    def decode(cls, data: bytes) -> "NtpPacket":
        if len(data) < HEADER_LEN:
            raise TruncatedError(
                f"Packet has {len(data)} bytes, header needs {HEADER_LEN}",
                details={"length": len(data)},
            )
        (
            first, stratum, poll, precision, root_delay, root_dispersion, reference_id,
            reference_ts, origin_ts, receive_ts, transmit_ts,
        ) = _DECODE_HEADER.unpack_from(data)

        version = (first >> 3) & 0x7
        if version not in SUPPORTED_VERSIONS:
            raise UnsupportedVersion(version)

        return cls(
            leap=first >> 6,
            version=version,
            mode=first & 0x7,
            stratum=stratum,
            poll=poll,
            precision=precision,
            root_delay=root_delay,
            root_dispersion=root_dispersion,
            reference_id=reference_id,
            reference_timestamp=reference_ts,
            origin_timestamp=origin_ts,
            receive_timestamp=receive_ts,
            transmit_timestamp=transmit_ts,
            extension_fields=[ef for _, ef in iter_extension_fields(data)],
        )

    def fields_of_type(self, field_type: int) -> List[ExtensionField]:
        return [ef for ef in self.extension_fields if ef.field_type == field_type]

    def with_fields(self, *fields: ExtensionField) -> "NtpPacket":
        """Copy of this packet with fields appended"""
        return replace(self, extension_fields=[*self.extension_fields, *fields])

    @property
    def kiss_code(self) -> Optional[str]:
        """Kiss-o'-Death code for stratum 0 replies"""
        if self.stratum != 0:
            return None
        return self.reference_id.decode("ascii", errors="replace")


def encode(packet: NtpPacket) -> bytes:
    return packet.encode()


def decode(data: bytes) -> NtpPacket:
    return NtpPacket.decode(data)


class RawPacketBuilder:
    """
    Byte-appending builder for packets that break the wire rules.

    Usage:
        data = (
            RawPacketBuilder()
            .header(request)
            .extension(ExtensionFieldType.UNIQUE_IDENTIFIER, b"\\x01" * 32, length=4096)
            .build()
        )
    """

    def __init__(self):
        self._parts: List[bytes] = []

    def header(self, packet: NtpPacket) -> "RawPacketBuilder":
        """Append the 48-byte header of packet (its extension fields are ignored)."""
        self._parts.append(packet.encode_header())
        return self

    def extension(
        self,
        field_type: int,
        payload: bytes = b"",
        length: Optional[int] = None,
        pad: bool = True,
    ) -> "RawPacketBuilder":
        """
        Append an extension field.

        Args:
            field_type: Type code, any 16-bit value
            payload: Field value
            length: Declared length written on the wire instead of the real one
            pad: Zero-pad the value to a multiple of 4
        """
        body = payload + bytes(-len(payload) % 4) if pad else payload
        declared = EF_HEADER_LEN + len(body) if length is None else length
        self._parts.append(_EF_HEADER.pack(field_type & 0xFFFF, declared & 0xFFFF) + body)
        return self

    def raw(self, data: bytes) -> "RawPacketBuilder":
        self._parts.append(bytes(data))
        return self

    def build(self) -> bytes:
        return b"".join(self._parts)
