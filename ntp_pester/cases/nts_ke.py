"""
NTS Key Establishment protocol (RFC 8915 section 4)
"""
from ntp_pester.engine.assertions import expect, expect_eq
from ntp_pester.engine.nts_ke import NtsKeConnection, NtsKeRequest
from ntp_pester.engine.nts_records import ErrorCode, NtsKeRecord

RESERVED_ID = 0xFFFF


async def happy(ke: NtsKeConnection) -> None:
    """Check that the server responds with a valid response to a valid request"""
    response = await ke.exchange(NtsKeRequest())

    expect_eq(
        response.next_protocol,
        [0],
        "Server did reply with different protocols then we asked for",
        response,
    )
    expect_eq(response.aead, [15], "Server did reply with different AEAD then we asked for", response)
    expect(not response.errors, "Server did reply with error code to normal request", response)
    expect(not response.warnings, "Server did reply with warning code to normal request", response)
    expect_eq(len(response.cookies), 8, "Server did not reply with 8 cookies", response)


async def error_on_unknown_next_protocol(ke: NtsKeConnection) -> None:
    """Only unknown next protocols proposed: the server answers an empty list"""
    response = await ke.exchange(NtsKeRequest(next_protocol=[RESERVED_ID]))

    expect_eq(response.next_protocol, [], "Server did not respond with empty next protocol", response)


async def ignore_unknown_extra_protocols(ke: NtsKeConnection) -> None:
    """
    Check that the server ignores unknown protocols.

    See RFC 8915 section 4.1.2.
    """
    response = await ke.exchange(NtsKeRequest(next_protocol=[RESERVED_ID, 0]))

    expect_eq(response.next_protocol, [0], "Server did not respond with expected next protocol", response)


async def error_on_unknown_aead(ke: NtsKeConnection) -> None:
    """Only unknown AEAD algorithms proposed: the server answers an empty list"""
    response = await ke.exchange(NtsKeRequest(aead=[RESERVED_ID]))

    expect_eq(response.aead, [], "Server did not respond with empty aead", response)


async def ignore_unknown_extra_aead(ke: NtsKeConnection) -> None:
    """
    Check that the server ignores unknown AEAD algorithms.

    0xFFFF is reserved for private use. See RFC 8915 section 4.1.5.
    """
    response = await ke.exchange(NtsKeRequest(aead=[RESERVED_ID, 15]))

    expect_eq(response.aead, [15], "Server did not respond with expected aead", response)


async def empty_message_resolves_in_error(ke: NtsKeConnection) -> None:
    """
    Check that the server replies with an error message even to an invalid request.

    See RFC 8915 section 4.1.3.
    """
    response = await ke.exchange([NtsKeRecord.end_of_message()])

    expect_eq(
        response.errors,
        [ErrorCode.BAD_REQUEST.value],
        "Server did not respond with error to empty message",
        response,
    )
