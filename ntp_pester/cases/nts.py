"""
NTS extension fields for NTPv4 (RFC 8915 section 5)
"""
import secrets

from ntp_pester.engine.assertions import expect, expect_eq, expect_reply
from ntp_pester.engine.connection import NtsConnection
from ntp_pester.engine.ntp_codec import NtpPacket
from ntp_pester.exceptions import ReceiveTimeoutError

DEFAULT_COOKIE_LEN = 100


async def happy(conn: NtsConnection) -> None:
    """Ensure the server correctly responds to a normal NTS request"""
    request, _ = NtpPacket.poll_message()

    # One cookie plus three placeholders asks for four new cookies
    reply = await expect_reply(conn.exchange(request, placeholders=3))

    expect(reply.authenticated, "Response was not authenticated", reply.packet)
    expect_eq(
        len(reply.new_cookies),
        4,
        "Server did not respond with the expected number of cookies",
        reply.packet,
    )


async def test_invalid_cookie_is_rejected(conn: NtsConnection) -> None:
    """
    A request carrying a cookie the server never issued must not be answered
    with time.

    The server may stay silent (the passing outcome on timeout) or send an
    unauthenticated NTS NAK (kiss code NTSN).
    """
    cookie_len = len(conn.pool.cookies[0]) if len(conn.pool) else DEFAULT_COOKIE_LEN
    request, _ = NtpPacket.poll_message()
    cookie = secrets.token_bytes(cookie_len)

    try:
        reply = await expect_reply(conn.exchange(request, cookie=cookie))
    except ReceiveTimeoutError:
        return

    expect(not reply.authenticated, "Server authenticated a reply to an unknown cookie", reply.packet)
    expect_eq(reply.packet.kiss_code, "NTSN", "Server did not answer with an NTS NAK", reply.packet)
