"""
Connection Abstraction

UdpConnection wraps one connected UDP endpoint to the target. NtsConnection
layers an NTS session (keys plus a cookie pool) on top of it. Each test case
gets its own instances, nothing here is shared between cases.
"""
import asyncio
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Tuple, TypeVar

import structlog

from ntp_pester.config import settings
from ntp_pester.engine.ntp_codec import (
    ExtensionField,
    ExtensionFieldType,
    Mode,
    NtpPacket,
    RequestIdentifier,
)
from ntp_pester.engine.nts_crypto import NtsKeys, build_nts_request, open_nts_response
from ntp_pester.exceptions import (
    CookiePoolExhausted,
    DecodeError,
    NtsAuthenticationError,
    ReceiveTimeoutError,
    SendError,
    TestFailure,
    TransportError,
)

logger = structlog.get_logger()

T = TypeVar("T")


class _DatagramQueue(asyncio.DatagramProtocol):
    """Queues every datagram (or socket error) for the connection to pick up"""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self.queue: "asyncio.Queue" = asyncio.Queue()

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self.queue.put_nowait(data[:self.max_bytes])

    def error_received(self, exc: Optional[Exception]) -> None:
        self.queue.put_nowait(exc or TransportError("udp_error"))


class UdpConnection:
    """
    Connected UDP peer with a fixed default timeout.

    Use UdpConnection.open() inside an async with block.
    """

    def __init__(self, host: str, port: int, timeout: float, transport, protocol: _DatagramQueue):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._transport = transport
        self._protocol = protocol

    @classmethod
    async def open(cls, host: str, port: int, timeout: float) -> "UdpConnection":
        """
        Raises:
            TransportError: If the endpoint cannot be created
        """
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: _DatagramQueue(settings.max_datagram_bytes),
                remote_addr=(host, port),
            )
        except OSError as e:
            raise TransportError(
                f"Could not open UDP endpoint to {host}:{port}: {e}",
                details={"error": str(e)},
            )
        return cls(host, port, timeout, transport, protocol)

    async def __aenter__(self) -> "UdpConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def send_raw(self, data: bytes) -> None:
        try:
            self._transport.sendto(data)
        except OSError as e:
            raise SendError(
                f"Failed to send data to {self.host}:{self.port}",
                details={"error": str(e), "data_size": len(data)},
            )

    async def send(self, packet: NtpPacket) -> None:
        await self.send_raw(packet.encode())

    async def receive_raw(self, timeout: Optional[float] = None) -> bytes:
        """
        Next datagram from the target.

        Raises:
            ReceiveTimeoutError: If nothing arrives within timeout
            TransportError: On ICMP errors (port unreachable etc.)
        """
        timeout = self.timeout if timeout is None else timeout
        try:
            item = await asyncio.wait_for(self._protocol.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ReceiveTimeoutError(
                f"Receive timeout from {self.host}:{self.port}",
                details={"timeout_sec": timeout},
            )
        if isinstance(item, TransportError):
            raise item
        if isinstance(item, Exception):
            raise TransportError(
                f"Failed to receive from {self.host}:{self.port}: {item}",
                details={"error": str(item), "error_type": type(item).__name__},
            )
        return item

    async def receive(self, timeout: Optional[float] = None) -> NtpPacket:
        """Next datagram decoded as NTP; DecodeError if it is not one."""
        return NtpPacket.decode(await self.receive_raw(timeout))

    async def exchange_raw(
        self,
        data: bytes,
        accept: Callable[[bytes], Optional[T]],
        timeout: Optional[float] = None,
    ) -> T:
        """
        Send data and wait for the first datagram accept() returns a value for.

        accept returns None for uncorrelated datagrams and raises DecodeError
        (or NtsAuthenticationError) for invalid ones; both are discarded.
        When the deadline passes and only invalid datagrams arrived, the last
        such error is raised instead of the timeout, with the datagram in its
        data attribute.
        """
        timeout = self.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        last_error: Optional[Exception] = None

        await self.send_raw(data)
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                datagram = await self.receive_raw(remaining)
            except ReceiveTimeoutError:
                break
            try:
                result = accept(datagram)
            except (DecodeError, NtsAuthenticationError) as e:
                logger.debug("udp_datagram_invalid", host=self.host, error=e.message, size=len(datagram))
                e.data = datagram
                last_error = e
                continue
            if result is None:
                logger.debug("udp_datagram_discarded", host=self.host, size=len(datagram))
                continue
            return result

        if last_error is not None:
            raise last_error
        raise ReceiveTimeoutError(
            f"No matching reply from {self.host}:{self.port}",
            details={"timeout_sec": timeout},
        )

    async def exchange(
        self,
        packet: NtpPacket,
        identifier: Optional[RequestIdentifier] = None,
        timeout: Optional[float] = None,
    ) -> NtpPacket:
        """
        Send packet and return the reply echoing its transmit timestamp.

        With an identifier carrying a uid, the reply must also echo the
        Unique Identifier field.
        """
        identifier = identifier or RequestIdentifier(expected_origin_timestamp=packet.transmit_timestamp)

        def accept(data: bytes) -> Optional[NtpPacket]:
            reply = NtpPacket.decode(data)
            return reply if identifier.matches(reply) else None

        return await self.exchange_raw(packet.encode(), accept, timeout)

    async def close(self) -> None:
        try:
            self._transport.close()
        except Exception as e:
            logger.warning(
                "udp_transport_close_failed",
                host=self.host,
                port=self.port,
                error=str(e),
                error_type=type(e).__name__,
            )


@dataclass(frozen=True)
class CookiePool:
    """Immutable set of unused NTS cookies"""

    cookies: Tuple[bytes, ...] = ()

    def take(self) -> Tuple[bytes, "CookiePool"]:
        if not self.cookies:
            raise CookiePoolExhausted("No NTS cookie left")
        return self.cookies[0], CookiePool(self.cookies[1:])

    def add(self, *cookies: bytes) -> "CookiePool":
        return CookiePool(self.cookies + tuple(cookies))

    def __len__(self) -> int:
        return len(self.cookies)


@dataclass(frozen=True)
class NtsSession:
    keys: NtsKeys
    pool: CookiePool


@dataclass
class NtsReply:
    packet: NtpPacket
    authenticated: bool
    encrypted_fields: List[ExtensionField] = field(default_factory=list)
    identifier: Optional[RequestIdentifier] = None

    @property
    def new_cookies(self) -> List[bytes]:
        return [
            ef.payload
            for ef in self.encrypted_fields
            if ef.field_type == ExtensionFieldType.NTS_COOKIE
        ]


class NtsConnection:
    """
    NTS-protected exchanges over a UdpConnection.

    Every request consumes one cookie from the pool; cookies returned in an
    authenticated reply replace it with a new pool.
    """

    def __init__(self, udp: UdpConnection, session: NtsSession):
        self.udp = udp
        self.session = session

    @property
    def pool(self) -> CookiePool:
        return self.session.pool

    async def __aenter__(self) -> "NtsConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.udp.close()

    def protect(
        self,
        packet: NtpPacket,
        placeholders: int = 0,
        cookie: Optional[bytes] = None,
    ) -> Tuple[bytes, RequestIdentifier]:
        """
        Encode packet with Unique Identifier, cookie, placeholders and authenticator.

        cookie overrides the pool, which is then left untouched.
        """
        if cookie is None:
            cookie, pool = self.session.pool.take()
            self.session = replace(self.session, pool=pool)
        return build_nts_request(packet, cookie, self.session.keys.c2s, placeholders=placeholders)

    async def exchange(
        self,
        packet: NtpPacket,
        placeholders: int = 0,
        cookie: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> NtsReply:
        """
        Send packet under NTS and return the matching reply.

        Replies are matched by origin timestamp and Unique Identifier; an
        authenticator that does not verify counts as an invalid datagram.
        """
        data, identifier = self.protect(packet, placeholders=placeholders, cookie=cookie)
        s2c = self.session.keys.s2c

        def accept(datagram: bytes) -> Optional[NtsReply]:
            reply, authenticated, encrypted = open_nts_response(datagram, s2c)
            if not identifier.matches(reply):
                return None
            return NtsReply(reply, authenticated, encrypted, identifier)

        reply = await self.udp.exchange_raw(data, accept, timeout)
        if reply.authenticated:
            self.session = replace(self.session, pool=self.session.pool.add(*reply.new_cookies))
        logger.debug(
            "nts_exchange_completed",
            host=self.udp.host,
            authenticated=reply.authenticated,
            new_cookies=len(reply.new_cookies),
            pool=len(self.session.pool),
        )
        return reply


def _is_valid_server_reply(packet: NtpPacket) -> bool:
    return packet.mode == Mode.SERVER and packet.version == 4


async def udp_server_still_alive(conn: UdpConnection) -> None:
    """
    Check that the server still answers a plain poll after a test.

    Raises:
        TestFailure: If the poll times out or is answered badly
    """
    request, identifier = NtpPacket.poll_message()
    try:
        reply = await conn.exchange(request, identifier)
    except ReceiveTimeoutError:
        raise TestFailure("Server did no longer reply to normal poll")
    except DecodeError as e:
        raise TestFailure(f"Poll was answered by invalid response: {e.message}", response=e.data)
    if not _is_valid_server_reply(reply):
        raise TestFailure("Poll was answered by invalid response", response=reply)


async def nts_server_still_alive(conn: NtsConnection) -> None:
    """Same as udp_server_still_alive, with an NTS-protected poll."""
    request, _ = NtpPacket.poll_message()
    try:
        reply = await conn.exchange(request)
    except ReceiveTimeoutError:
        raise TestFailure("Server did no longer reply to normal poll")
    except (DecodeError, NtsAuthenticationError) as e:
        raise TestFailure(f"Poll was answered by invalid response: {e.message}", response=e.data)
    if not reply.authenticated or not _is_valid_server_reply(reply.packet):
        raise TestFailure("Poll was answered by invalid response", response=reply.packet)
