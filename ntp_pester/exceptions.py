"""
Custom Exception Hierarchy for the harness

Provides structured exceptions so the runner can tell a misbehaving server
(Failed) apart from a broken environment (Errored).
All custom exceptions inherit from PesterError base class.
"""
from typing import Iterable, Optional


class PesterError(Exception):
    """
    Base exception for all harness-specific errors.

    All custom exceptions should inherit from this class to allow
    catching all harness errors with a single except clause.
    """
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Configuration Errors

class ConfigurationError(PesterError):
    """
    Invalid configuration or settings.

    Raised when CLI values or environment settings fail validation.
    """
    pass


class TargetResolutionError(ConfigurationError):
    """Target host could not be resolved; aborts the whole run."""
    pass


# Codec Errors

class DecodeError(PesterError):
    """
    Bytes could not be decoded into a packet or record.

    Always local to the codec and recoverable. When raised for a datagram
    received from the target, data holds the offending bytes.
    """
    data: Optional[bytes] = None


class TruncatedError(DecodeError):
    """Input ends before the fixed header does."""
    pass


class InvalidExtensionLength(DecodeError):
    """Extension field length is malformed or runs past the datagram."""
    pass


class UnsupportedVersion(DecodeError):
    """Header carries a version this codec does not decode."""
    def __init__(self, version: int):
        super().__init__(f"Unsupported NTP version {version}", {"version": version})
        self.version = version


class InvalidRecord(DecodeError):
    """NTS-KE record body does not match the layout of its type."""
    pass


# NTS-KE Errors

class NtsKeError(PesterError):
    """
    NTS Key Establishment failures.

    Base class for everything that can go wrong between opening the TLS
    channel and deriving keys.
    """
    pass


class NtsKeConnectError(NtsKeError):
    """TCP or TLS connection to the NTS-KE server failed."""
    pass


class NtsKeCertificateError(NtsKeError):
    """Server certificate chain or hostname could not be verified."""
    pass


class UnknownCriticalRecord(NtsKeError):
    """Server sent a record type we do not know with the critical bit set."""
    def __init__(self, record_type: int):
        super().__init__(
            f"Server sent unknown critical record type {record_type}",
            {"record_type": record_type},
        )
        self.record_type = record_type


class NtsKeNegotiationError(NtsKeError):
    """Protocol or algorithm negotiation did not produce a usable result."""
    pass


class NtsKeServerError(NtsKeNegotiationError):
    """Server answered with one or more Error records."""
    def __init__(self, codes: Iterable[int]):
        codes = list(codes)
        super().__init__(f"Server replied with error codes {codes}", {"codes": codes})
        self.codes = codes


class UnknownNextProtocol(NtsKeNegotiationError):
    """Server selected a next protocol we did not propose."""
    pass


class UnknownAead(NtsKeNegotiationError):
    """Server selected an AEAD algorithm we did not propose."""
    pass


class EmptyMessage(NtsKeError):
    """Server response contained no records besides End of Message."""
    pass


class UnexpectedClose(NtsKeError):
    """Server closed the stream in the middle of a message."""
    pass


class NtsKeProtocolError(NtsKeError):
    """Server response violated NTS-KE framing (e.g. too many records)."""
    pass


# NTS Errors

class NtsError(PesterError):
    """NTS-protected NTP exchange failures."""
    pass


class NtsAuthenticationError(NtsError):
    """Server response failed AEAD authentication."""
    data: Optional[bytes] = None


class CookiePoolExhausted(NtsError):
    """No cookie left to build an NTS request."""
    pass


# Network and Transport Errors

class TransportError(PesterError):
    """
    Network transport failures.

    Base class for all network communication errors.
    """
    pass


class SendError(TransportError):
    """Failed to send data to target."""
    pass


class ReceiveTimeoutError(TransportError):
    """No (correlated) reply arrived within the configured bound."""
    pass


# Test Outcome Signals

class TestFailure(PesterError):
    """
    Raised inside a test body when the server violated an expectation.

    Carries an optional dump of the offending response for the report.
    """
    __test__ = False

    def __init__(self, reason: str, response: Optional[object] = None):
        super().__init__(reason)
        self.reason = reason
        self.response = response


class TestSkipped(PesterError):
    """Raised when a test cannot run in the active configuration."""
    __test__ = False

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# Report Errors

class ReportFinalizedError(PesterError):
    """Attempt to modify a report after the run completed."""
    pass
