"""
Basic NTP polls (RFC 5905)
"""
from ntp_pester.engine.assertions import (
    expect_eq,
    expect_gt,
    expect_no_response,
    expect_reply,
    expect_version,
)
from ntp_pester.engine.connection import UdpConnection
from ntp_pester.engine.ntp_codec import Mode, NtpPacket


async def _poll(conn: UdpConnection, version: int) -> None:
    request, identifier = NtpPacket.poll_message(version=version)
    packet = await expect_reply(conn.exchange(request, identifier))

    expect_version(packet, version)
    expect_eq(
        packet.origin_timestamp,
        identifier.expected_origin_timestamp,
        "Incorrect origin timestamp",
        packet,
    )
    expect_gt(
        packet.transmit_timestamp,
        packet.receive_timestamp,
        "Receive should happen before send of response",
        packet,
    )
    expect_eq(packet.mode, Mode.SERVER, "Incorrect mode in server response", packet)


async def test_responds_to_version_4(conn: UdpConnection) -> None:
    """
    Sending a normal poll request should return an answer.

    Checks that the tested server actually responds to us.
    """
    await _poll(conn, 4)


async def test_responds_to_version_3(conn: UdpConnection) -> None:
    """NTPv3 clients are still common, a v3 poll gets a v3 answer."""
    await _poll(conn, 3)


async def test_ignores_version_5(conn: UdpConnection) -> None:
    """
    Check that unknown versions are ignored.

    Since NTPv5 is not released yet any compliant server should still ignore
    packets with this version number. No reply within the timeout is the
    passing outcome here.
    """
    request, _ = NtpPacket.poll_message(version=5)
    await conn.send(request)
    await expect_no_response(conn.receive_raw(), "Should not respond to ntp version 5 requests")
