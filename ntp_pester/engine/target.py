"""
Target context

Everything a test case needs to reach the server: fresh UDP endpoints, NTS
sessions handed out from a cookie jar, and new NTS-KE connections.
"""
import asyncio
import socket
from dataclasses import dataclass
from typing import List, Optional, Tuple

import structlog

from ntp_pester.config import RunConfig, settings
from ntp_pester.engine.connection import CookiePool, NtsConnection, NtsSession, UdpConnection
from ntp_pester.engine.nts_crypto import NtsKeys
from ntp_pester.engine.nts_ke import NtsKeConnection, NtsKeyMaterial, establish
from ntp_pester.exceptions import NtsKeError, PesterError, TargetResolutionError, TestSkipped

logger = structlog.get_logger()

NTS_DISABLED = "NTS not enabled"


class NtsSessionSource:
    """
    Cookie jar filled by NTS-KE with the target.

    Every NTS case takes its own NtsSession (keys plus a private cookie pool).
    The jar is refilled by a new key establishment when it runs low; the NTP
    server a refill points to has to stay the same.
    """

    def __init__(self, config: RunConfig):
        self.config = config
        self._keys: Optional[NtsKeys] = None
        self._jar: List[bytes] = []
        self._ntp_address: Optional[Tuple[str, int]] = None
        self._error: Optional[PesterError] = None

    @property
    def ntp_address(self) -> Optional[Tuple[str, int]]:
        """NTP host and port announced by the last NTS-KE, None before bootstrap"""
        return self._ntp_address

    @property
    def error(self) -> Optional[PesterError]:
        return self._error

    async def _establish(self) -> NtsKeyMaterial:
        return await establish(
            self.config.target,
            self.config.ke_port,
            ca_file=self.config.ca_file,
            timeout=self.config.timeout,
        )

    async def bootstrap(self) -> None:
        """
        Run the initial NTS-KE.

        A failure is remembered and reported by every later take_session().
        """
        try:
            material = await self._establish()
        except PesterError as e:
            self._error = e
        except OSError as e:
            self._error = NtsKeError(str(e), details={"error_type": type(e).__name__})
        else:
            self._install(material)
            logger.info(
                "nts_bootstrap_completed",
                host=self.config.target,
                ke_port=self.config.ke_port,
                ntp_host=material.ntp_host,
                ntp_port=material.ntp_port,
                cookies=len(material.cookies),
            )
            return

        logger.error(
            "nts_bootstrap_failed",
            host=self.config.target,
            ke_port=self.config.ke_port,
            error=self._error.message,
            error_type=type(self._error).__name__,
        )

    def _install(self, material: NtsKeyMaterial) -> None:
        self._keys = material.keys
        self._jar = list(material.cookies)
        self._ntp_address = (material.ntp_host, material.ntp_port)

    async def _refill(self) -> None:
        material = await self._establish()
        address = (material.ntp_host, material.ntp_port)
        if address != self._ntp_address:
            raise NtsKeError(
                "Server switched to which UDP host it points",
                details={"before": self._ntp_address, "after": address},
            )
        if self._jar:
            # Leftover cookies belong to the previous keys
            logger.debug("nts_cookies_dropped", count=len(self._jar))
        self._install(material)
        logger.debug("nts_jar_refilled", cookies=len(self._jar))

    async def take_session(self) -> Tuple[NtsSession, str, int]:
        """
        Hand out a session with its own cookies and the NTP address to use.

        Raises:
            NtsKeError: If the bootstrap or a refill failed
        """
        if self._error is not None:
            raise NtsKeError(
                f"NTS-KE with {self.config.target}:{self.config.ke_port} failed: {self._error.message}",
                details=self._error.details,
            )
        if self._keys is None:
            await self.bootstrap()
            return await self.take_session()

        count = settings.nts_session_cookies
        if len(self._jar) < count:
            await self._refill()

        cookies, self._jar = self._jar[:count], self._jar[count:]
        host, port = self._ntp_address
        return NtsSession(keys=self._keys, pool=CookiePool(tuple(cookies))), host, port


@dataclass
class TargetContext:
    """Per-run view of the target, shared read-only by all cases"""

    config: RunConfig
    nts: Optional[NtsSessionSource] = None

    @property
    def nts_enabled(self) -> bool:
        return self.config.nts_enabled

    def ntp_address(self) -> Tuple[str, int]:
        if self.nts is not None and self.nts.ntp_address is not None:
            return self.nts.ntp_address
        return self.config.target, self.config.port

    async def udp(self) -> UdpConnection:
        host, port = self.ntp_address()
        return await UdpConnection.open(host, port, self.config.timeout)

    async def nts_connection(self) -> NtsConnection:
        """Fresh NTS session over a new UDP endpoint; TestSkipped without NTS."""
        if not self.nts_enabled:
            raise TestSkipped(NTS_DISABLED)
        if self.nts is None:
            raise NtsKeError("NTS is not configured for this run")
        session, host, port = await self.nts.take_session()
        udp = await UdpConnection.open(host, port, self.config.timeout)
        return NtsConnection(udp, session)

    async def ke(self) -> NtsKeConnection:
        """New NTS-KE connection to the target; TestSkipped without NTS."""
        if not self.nts_enabled:
            raise TestSkipped(NTS_DISABLED)
        return await NtsKeConnection.connect(
            self.config.target,
            self.config.ke_port,
            ca_file=self.config.ca_file,
            timeout=self.config.timeout,
        )


async def resolve(host: str, port: int) -> List[tuple]:
    """
    Raises:
        TargetResolutionError: If host does not resolve to any address
    """
    loop = asyncio.get_running_loop()
    try:
        addresses = await loop.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError) as e:
        raise TargetResolutionError(
            f"Failed to lookup host: {host!r}",
            details={"error": str(e)},
        )
    if not addresses:
        raise TargetResolutionError(f"Host {host!r} did not resolve into any address")
    return addresses


async def prepare_target(config: RunConfig) -> TargetContext:
    """
    Resolve the target and, with NTS enabled, run the initial NTS-KE.

    Raises:
        TargetResolutionError: Aborts the run before any case executes
    """
    addresses = await resolve(config.target, config.port)
    logger.info("target_resolved", host=config.target, addresses=[a[4][0] for a in addresses])

    if not config.nts_enabled:
        return TargetContext(config)

    source = NtsSessionSource(config)
    await source.bootstrap()
    return TargetContext(config, nts=source)
