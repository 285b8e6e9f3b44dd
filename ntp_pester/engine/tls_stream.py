"""
TLS stream for NTS-KE

Runs a pyOpenSSL client over memory BIOs and moves the ciphertext across an
asyncio TCP stream. This keeps every blocking point (connect, handshake,
reads) under asyncio.wait_for and gives access to the TLS exporter that NTS
key derivation needs.
"""
import asyncio
import ipaddress
from pathlib import Path
from typing import List, Optional

import structlog
from OpenSSL import SSL
from service_identity import CertificateError, VerificationError
from service_identity.pyopenssl import verify_hostname, verify_ip_address

from ntp_pester.config import settings
from ntp_pester.exceptions import (
    NtsKeCertificateError,
    NtsKeConnectError,
    ReceiveTimeoutError,
    TransportError,
    UnexpectedClose,
)

logger = structlog.get_logger()

NTS_KE_ALPN = b"ntske/1"


def _verify_callback(conn, cert, errno, depth, ok) -> bool:
    return bool(ok)


def build_client_context(ca_file: Optional[Path] = None) -> SSL.Context:
    """
    TLS 1.3 client context with ALPN ntske/1.

    Trusts ca_file when given, the platform default roots otherwise.
    """
    ctx = SSL.Context(SSL.TLS_CLIENT_METHOD)
    ctx.set_min_proto_version(SSL.TLS1_3_VERSION)
    ctx.set_verify(SSL.VERIFY_PEER, _verify_callback)
    if ca_file is not None:
        ctx.load_verify_locations(str(ca_file))
    else:
        ctx.set_default_verify_paths()
    ctx.set_alpn_protos([NTS_KE_ALPN])
    return ctx


def _read_loop(read_fn) -> bytes:
    chunks: List[bytes] = []
    while True:
        try:
            chunk = read_fn(settings.ke_read_size)
        except SSL.WantReadError:
            break
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


def _is_verification_failure(error: SSL.Error) -> bool:
    return "certificate verify failed" in str(error).lower()


class TlsStream:
    """
    Client side of one TLS connection.

    Use TlsStream.open() to connect and handshake; the instance is an async
    context manager that closes the connection on exit.
    """

    def __init__(
        self,
        host: str,
        port: int,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        connection: SSL.Connection,
        timeout: float,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._reader = reader
        self._writer = writer
        self._ssl = connection
        self._eof = False

    @classmethod
    async def open(
        cls,
        host: str,
        port: int,
        ca_file: Optional[Path] = None,
        timeout: float = 1.0,
        context: Optional[SSL.Context] = None,
    ) -> "TlsStream":
        """
        Connect, handshake and verify the server identity.

        Raises:
            NtsKeConnectError: TCP connect or handshake failed
            NtsKeCertificateError: Chain or hostname verification failed
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise NtsKeConnectError(
                f"Connection timeout to {host}:{port}",
                details={"timeout_sec": timeout},
            )
        except OSError as e:
            raise NtsKeConnectError(
                f"Could not open TCP connection to {host}:{port}: {e}",
                details={"error": str(e)},
            )

        connection = SSL.Connection(context or build_client_context(ca_file), None)
        if not _is_ip_address(host):
            connection.set_tlsext_host_name(host.encode("idna"))
        connection.set_connect_state()

        stream = cls(host, port, reader, writer, connection, timeout)
        try:
            await asyncio.wait_for(stream._handshake(), timeout=timeout)
            stream._verify_identity()
        except (asyncio.TimeoutError, ReceiveTimeoutError):
            await stream.close()
            raise NtsKeConnectError(
                f"TLS handshake with {host}:{port} timed out",
                details={"timeout_sec": timeout},
            )
        except (TransportError, UnexpectedClose) as e:
            await stream.close()
            raise NtsKeConnectError(f"TLS handshake with {host}:{port} failed: {e}", details=e.details)
        except Exception:
            await stream.close()
            raise

        logger.debug(
            "tls_connected",
            host=host,
            port=port,
            alpn=connection.get_alpn_proto_negotiated(),
            version=connection.get_protocol_version_name(),
        )
        return stream

    async def __aenter__(self) -> "TlsStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _handshake(self) -> None:
        while True:
            try:
                self._ssl.do_handshake()
            except SSL.WantReadError:
                await self._flush()
                if not await self._fill():
                    raise UnexpectedClose(f"{self.host}:{self.port} closed the connection during the TLS handshake")
                continue
            except SSL.Error as e:
                if _is_verification_failure(e):
                    raise NtsKeCertificateError(
                        f"Certificate of {self.host} could not be verified: {e}",
                        details={"error": str(e)},
                    )
                raise NtsKeConnectError(f"TLS handshake failed: {e}", details={"error": str(e)})
            break
        await self._flush()

        if self._ssl.get_alpn_proto_negotiated() != NTS_KE_ALPN:
            raise NtsKeConnectError(
                "Server did not negotiate the ntske/1 ALPN protocol",
                details={"alpn": self._ssl.get_alpn_proto_negotiated()},
            )

    def _verify_identity(self) -> None:
        try:
            if _is_ip_address(self.host):
                verify_ip_address(self._ssl, self.host)
            else:
                verify_hostname(self._ssl, self.host)
        except (VerificationError, CertificateError) as e:
            raise NtsKeCertificateError(
                f"Certificate does not match {self.host}: {e}",
                details={"error": str(e)},
            )

    async def _flush(self) -> None:
        outgoing = _read_loop(self._ssl.bio_read)
        if not outgoing:
            return
        try:
            self._writer.write(outgoing)
            await self._writer.drain()
        except OSError as e:
            raise TransportError(
                f"Failed to write to {self.host}:{self.port}",
                details={"error": str(e), "data_size": len(outgoing)},
            )

    async def _fill(self) -> bool:
        """Move ciphertext from the socket into OpenSSL. False on EOF."""
        if self._eof:
            return False
        try:
            data = await asyncio.wait_for(
                self._reader.read(settings.ke_read_size),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise ReceiveTimeoutError(
                f"Receive timeout from {self.host}:{self.port}",
                details={"timeout_sec": self.timeout},
            )
        except OSError as e:
            raise TransportError(
                f"Failed to read from {self.host}:{self.port}: {e}",
                details={"error": str(e)},
            )
        if not data:
            self._eof = True
            return False
        self._ssl.bio_write(data)
        return True

    async def send(self, data: bytes) -> None:
        self._ssl.sendall(data)
        await self._flush()

    async def receive(self, max_bytes: Optional[int] = None) -> bytes:
        """
        Return the next chunk of plaintext, b"" once the peer closed the stream.

        Raises:
            ReceiveTimeoutError: If nothing arrives within the timeout
        """
        max_bytes = max_bytes or settings.ke_read_size
        while True:
            try:
                return self._ssl.recv(max_bytes)
            except SSL.WantReadError:
                # Post-handshake messages (session tickets) may need a reply
                await self._flush()
                if not await self._fill():
                    return b""
            except SSL.ZeroReturnError:
                return b""
            except SSL.Error as e:
                raise TransportError(f"TLS error from {self.host}:{self.port}: {e}", details={"error": str(e)})

    def export_keying_material(self, label: bytes, length: int, context: bytes) -> bytes:
        """RFC 5705 exporter on the established session"""
        return self._ssl.export_keying_material(label, length, context)

    async def close(self) -> None:
        try:
            self._ssl.shutdown()
            await self._flush()
        except (SSL.Error, TransportError) as e:
            logger.debug("tls_shutdown_failed", host=self.host, port=self.port, error=str(e))
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except Exception as e:
            logger.warning(
                "tls_writer_close_failed",
                host=self.host,
                port=self.port,
                error=str(e),
                error_type=type(e).__name__,
            )


def _is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True
