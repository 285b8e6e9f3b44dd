"""
Assertion helpers for test case bodies

Each helper raises TestFailure with a readable reason and the offending
response attached, so the report can show what the server sent.
"""
from typing import Any, Optional

from ntp_pester.exceptions import DecodeError, NtsAuthenticationError, ReceiveTimeoutError, TestFailure


def fail(reason: str, response: Optional[Any] = None) -> None:
    raise TestFailure(reason, response=response)


def expect(condition: bool, reason: str, response: Optional[Any] = None) -> None:
    if not condition:
        raise TestFailure(reason, response=response)


def expect_eq(actual: Any, expected: Any, reason: str, response: Optional[Any] = None) -> None:
    if actual != expected:
        raise TestFailure(f"expected {expected!r}, actual {actual!r}: {reason}", response=response)


def expect_gt(actual: Any, bound: Any, reason: str, response: Optional[Any] = None) -> None:
    if not actual > bound:
        raise TestFailure(f"value {actual!r} not greater than {bound!r}: {reason}", response=response)


def expect_lt(actual: Any, bound: Any, reason: str, response: Optional[Any] = None) -> None:
    if not actual < bound:
        raise TestFailure(f"value {actual!r} not smaller than {bound!r}: {reason}", response=response)


def expect_version(packet, version: int) -> None:
    if packet.version != version:
        raise TestFailure(
            f"Server replied with version {packet.version} instead of {version}",
            response=packet,
        )


async def expect_no_response(awaitable, reason: str) -> None:
    """
    Await a receive/exchange that should time out.

    A ReceiveTimeoutError is the passing outcome here; any reply fails.
    """
    try:
        response = await awaitable
    except ReceiveTimeoutError:
        return
    raise TestFailure(f"Unexpected response from server: {reason}", response=response)


async def expect_reply(awaitable):
    """
    Await an exchange whose reply is the property under test.

    A reply that does not decode (or does not authenticate) fails the case
    with the raw datagram attached instead of erroring it.
    """
    try:
        return await awaitable
    except (DecodeError, NtsAuthenticationError) as e:
        raise TestFailure(f"Server replied with invalid packet: {e.message}", response=e.data)
