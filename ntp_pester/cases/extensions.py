"""
Extension field handling without NTS (RFC 5905 section 7.5, RFC 7822)
"""
from ntp_pester.engine.assertions import (
    expect,
    expect_eq,
    expect_lt,
    expect_no_response,
    expect_reply,
    fail,
)
from ntp_pester.engine.connection import UdpConnection
from ntp_pester.engine.ntp_codec import (
    ExtensionField,
    ExtensionFieldType,
    NtpPacket,
    RawPacketBuilder,
)


async def test_unknown_extensions_are_ignored(conn: UdpConnection) -> None:
    """
    Test if a server ignores unknown extensions.

    A NTP server should ignore any extension fields which it can not handle.
    """
    request, identifier = NtpPacket.poll_message()
    request = request.with_fields(ExtensionField(0, b""))

    packet = await expect_reply(conn.exchange(request, identifier))

    if packet.extension_fields:
        fail(
            "Received an extension field in response to an invalid extension field. "
            f"(EF: {packet.extension_fields[0]!r})",
            packet,
        )


async def test_unique_id_is_returned(conn: UdpConnection) -> None:
    """
    Test if a server returns a unique id field as is even without NTS.

    A server supporting NTS should still reply with the unique id extension
    that the client sent.
    """
    request, identifier = NtpPacket.poll_message()
    uid = ExtensionField.unique_identifier(bytes(range(32)))
    request = request.with_fields(uid)

    packet = await expect_reply(conn.exchange(request, identifier))

    fields = packet.extension_fields
    expect(len(fields) > 0, "Server did not reply with unique id EF", packet)
    expect_lt(len(fields), 2, f"Too many extension fields provided by server (Fields: {fields!r})", packet)
    expect_eq(fields[0], uid, "Response UID does not match request", packet)


async def test_invalid_extension_length_is_ignored(conn: UdpConnection) -> None:
    """
    A request whose extension field claims more bytes than the datagram holds
    is malformed and must be dropped.

    No reply within the timeout is the passing outcome here.
    """
    request, _ = NtpPacket.poll_message()
    data = (
        RawPacketBuilder()
        .header(request)
        .extension(ExtensionFieldType.UNIQUE_IDENTIFIER, bytes(range(32)), length=1024)
        .build()
    )
    await conn.send_raw(data)
    await expect_no_response(conn.receive_raw(), "Server answered a request with an overlong extension field")
