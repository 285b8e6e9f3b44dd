"""
NTS-KE Client - NTS Key Establishment over TLS (RFC 8915 section 4)

Lifecycle of one handshake:
  1. connect()         TLS to host:ke_port, ALPN ntske/1, certificate checked
  2. send request      Next Protocol, AEAD Algorithm, [Server], [Port], End of Message
  3. collect_records() read until End of Message, bounded in count and time
  4. do_request()      validate the negotiation and derive c2s/s2c keys with
                       the TLS exporter
  5. close()           NTS-KE is one-shot, the stream is not reused

exchange() stops after step 3 and hands the parsed response to test cases
that inspect server behavior directly.
"""
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

import structlog

from ntp_pester.config import settings
from ntp_pester.engine.nts_crypto import AeadAlgorithm, NtsCipher, NtsKeys
from ntp_pester.engine.nts_records import (
    NextProtocol,
    NtsKeRecord,
    NtsRecordDecoder,
    RecordType,
    encode_records,
)
from ntp_pester.engine.tls_stream import TlsStream
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

logger = structlog.get_logger()

EXPORTER_LABEL = b"EXPORTER-network-time-security"


@dataclass
class NtsKeRequest:
    """Convenience wrapper around all records of an NTS-KE request"""

    next_protocol: List[int] = field(default_factory=lambda: [NextProtocol.NTPV4.value])
    aead: List[int] = field(default_factory=lambda: [AeadAlgorithm.AEAD_AES_SIV_CMAC_256.value])
    critical_aead: bool = False
    server: Optional[str] = None
    port: Optional[int] = None
    extra: List[NtsKeRecord] = field(default_factory=list)  # sent right before End of Message

    def records(self) -> List[NtsKeRecord]:
        records = [
            NtsKeRecord.next_protocol(self.next_protocol),
            NtsKeRecord.aead_algorithm(self.aead, critical=self.critical_aead),
        ]
        if self.server is not None:
            records.append(NtsKeRecord.server(self.server))
        if self.port is not None:
            records.append(NtsKeRecord.port(self.port))
        records.extend(self.extra)
        records.append(NtsKeRecord.end_of_message())
        return records


@dataclass
class NtsKeResponse:
    """All fields an NTS-KE response can carry"""

    next_protocol: Optional[List[int]] = None
    aead: Optional[List[int]] = None
    errors: List[int] = field(default_factory=list)
    warnings: List[int] = field(default_factory=list)
    cookies: List[bytes] = field(default_factory=list)
    server: Optional[str] = None
    port: Optional[int] = None
    ignored: List[NtsKeRecord] = field(default_factory=list)

    @classmethod
    def from_records(cls, records: Iterable[NtsKeRecord]) -> "NtsKeResponse":
        """
        Fold records (End of Message excluded) into a response.

        Raises:
            UnknownCriticalRecord: For an unknown type with the critical bit
            NtsKeNegotiationError: For duplicated single-valued records
            InvalidRecord: For bodies that do not match their type
        """
        response = cls()
        for record in records:
            rtype = record.record_type
            if rtype == RecordType.NEXT_PROTOCOL:
                response._set_once("next_protocol", record.u16_list(), "Next Protocol Negotiation")
            elif rtype == RecordType.AEAD_ALGORITHM:
                response._set_once("aead", record.u16_list(), "AEAD Algorithm Negotiation")
            elif rtype == RecordType.ERROR:
                response.errors.append(record.u16())
            elif rtype == RecordType.WARNING:
                response.warnings.append(record.u16())
            elif rtype == RecordType.NEW_COOKIE:
                response.cookies.append(record.body)
            elif rtype == RecordType.SERVER:
                response._set_once("server", record.text(), "NTPv4 Server Negotiation")
            elif rtype == RecordType.PORT:
                response._set_once("port", record.u16(), "NTPv4 Port Negotiation")
            elif rtype == RecordType.END_OF_MESSAGE:
                raise NtsKeProtocolError("End of Message record inside a message")
            elif record.critical:
                raise UnknownCriticalRecord(rtype)
            else:
                response.ignored.append(record)
        return response

    def _set_once(self, name: str, value, label: str) -> None:
        if getattr(self, name) is not None:
            raise NtsKeNegotiationError(
                f"Response included more than one {label} record",
                details={"record": label},
            )
        setattr(self, name, value)

    def raise_for_error(self) -> None:
        if self.errors:
            raise NtsKeServerError(self.errors)


@dataclass(frozen=True)
class NtsKeyMaterial:
    """Everything the NTP phase needs from one NTS-KE handshake"""

    aead: AeadAlgorithm
    cookies: Tuple[bytes, ...]
    keys: NtsKeys
    ntp_host: str
    ntp_port: int

    def __repr__(self) -> str:
        return (
            f"NtsKeyMaterial(aead={self.aead.name}, cookies={len(self.cookies)}, "
            f"ntp={self.ntp_host}:{self.ntp_port})"
        )


def derive_keys(stream, protocol: int, aead: AeadAlgorithm) -> NtsKeys:
    """Derive c2s/s2c keys from the TLS exporter (RFC 8915 section 5.1)."""
    keys = []
    for direction in (0, 1):
        context = struct.pack(">HHB", protocol, aead.value, direction)
        key = stream.export_keying_material(EXPORTER_LABEL, aead.key_length, context)
        keys.append(NtsCipher(key, aead))
    return NtsKeys(c2s=keys[0], s2c=keys[1])


class NtsKeConnection:
    """
    An active connection to an NTS-KE server.

    stream is anything with async send(bytes), async receive() -> bytes
    (b"" at end of stream), async close() and
    export_keying_material(label, length, context); normally a TlsStream.
    """

    def __init__(self, stream, host: str, max_records: Optional[int] = None):
        self.host = host
        self.max_records = max_records or settings.max_ke_records
        self._stream = stream
        self._decoder = NtsRecordDecoder()

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int,
        ca_file: Optional[Path] = None,
        timeout: float = 1.0,
    ) -> "NtsKeConnection":
        stream = await TlsStream.open(host, port, ca_file=ca_file, timeout=timeout)
        logger.debug("nts_ke_connected", host=host, port=port)
        return cls(stream, host)

    async def __aenter__(self) -> "NtsKeConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def send_records(self, records: Iterable[NtsKeRecord]) -> None:
        await self._stream.send(encode_records(list(records)))

    async def send_raw(self, data: bytes) -> None:
        await self._stream.send(data)

    async def recv_record(self) -> Optional[NtsKeRecord]:
        """
        Next record from the server, None once the stream closed cleanly.

        Raises:
            UnexpectedClose: If the stream ends inside a record
        """
        while True:
            record = self._decoder.next_record()
            if record is not None:
                return record
            data = await self._stream.receive()
            if not data:
                if self._decoder.pending:
                    raise UnexpectedClose(
                        "NTS-KE stream closed inside a record",
                        details={"pending": self._decoder.pending},
                    )
                return None
            self._decoder.feed(data)

    async def collect_records(self) -> List[NtsKeRecord]:
        """
        Read one response message, End of Message excluded.

        Raises:
            EmptyMessage: Stream closed before any record, or only End of Message
            UnexpectedClose: Stream closed before End of Message
            UnknownCriticalRecord: Unknown record type with critical bit
            NtsKeProtocolError: More records than max_records
        """
        records: List[NtsKeRecord] = []
        while True:
            record = await self.recv_record()
            if record is None:
                if not records:
                    raise EmptyMessage("NTS-KE server closed the connection without sending any record")
                raise UnexpectedClose(
                    "NTS-KE closed connection without sending End of Message",
                    details={"records": len(records)},
                )
            if record.is_end_of_message:
                if not records:
                    raise EmptyMessage("NTS-KE response contained only End of Message")
                return records
            if not record.is_known:
                if record.critical:
                    raise UnknownCriticalRecord(record.record_type)
                logger.info("nts_ke_record_ignored", host=self.host, record_type=record.record_type)
            records.append(record)
            if len(records) > self.max_records:
                raise NtsKeProtocolError(
                    f"NTS-KE response exceeded {self.max_records} records",
                    details={"max_records": self.max_records},
                )

    async def exchange(self, request: Union[NtsKeRequest, Iterable[NtsKeRecord]]) -> NtsKeResponse:
        """Send a complete request and parse the response, without judging it."""
        if isinstance(request, NtsKeRequest):
            records = request.records()
        else:
            records = list(request)
        await self.send_records(records)
        return NtsKeResponse.from_records(await self.collect_records())

    async def do_request(self, request: Optional[NtsKeRequest] = None) -> NtsKeyMaterial:
        """
        Run a full key establishment with default (or given) proposals.

        Error records win over any Server/Port redirection in the same response.

        Raises:
            NtsKeServerError: Server replied with Error records
            UnknownNextProtocol / UnknownAead: Server picked something not proposed
            NtsKeNegotiationError: Negotiation incomplete (missing records, no cookies)
        """
        request = request or NtsKeRequest()
        response = await self.exchange(request)
        response.raise_for_error()

        if response.next_protocol is None:
            raise NtsKeNegotiationError("Server did not reply with a Next Protocol Negotiation record")
        if response.next_protocol != [NextProtocol.NTPV4.value]:
            raise UnknownNextProtocol(
                f"Server selected next protocol {response.next_protocol}, expected [0]",
                details={"next_protocol": response.next_protocol},
            )

        if response.aead is None:
            raise NtsKeNegotiationError("Server did not reply with an AEAD Algorithm Negotiation record")
        if len(response.aead) != 1 or response.aead[0] not in request.aead:
            raise UnknownAead(
                f"Server selected AEAD {response.aead}, proposed {request.aead}",
                details={"aead": response.aead},
            )
        try:
            aead = AeadAlgorithm(response.aead[0])
        except ValueError:
            raise UnknownAead(f"AEAD {response.aead[0]} is not supported", details={"aead": response.aead})

        if not response.cookies:
            raise NtsKeNegotiationError("Server did not supply any cookies")

        keys = derive_keys(self._stream, NextProtocol.NTPV4.value, aead)
        material = NtsKeyMaterial(
            aead=aead,
            cookies=tuple(response.cookies),
            keys=keys,
            ntp_host=response.server or self.host,
            ntp_port=response.port or settings.default_port,
        )
        if response.warnings:
            logger.warning("nts_ke_warnings", host=self.host, codes=response.warnings)
        logger.debug("nts_ke_completed", host=self.host, material=repr(material))
        return material

    async def close(self) -> None:
        await self._stream.close()


async def establish(
    host: str,
    port: int,
    ca_file: Optional[Path] = None,
    timeout: float = 1.0,
) -> NtsKeyMaterial:
    """Connect, run one default key establishment and close the stream."""
    async with await NtsKeConnection.connect(host, port, ca_file=ca_file, timeout=timeout) as ke:
        return await ke.do_request()
