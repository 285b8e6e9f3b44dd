"""
NTS cryptography - AEAD ciphers and NTS request/response protection (RFC 8915 section 5)

Requests carry, in order:
  Unique Identifier, NTS Cookie, NTS Cookie Placeholder*, NTS Authenticator

The authenticator holds a nonce and the AES-SIV output over everything before
it (header plus preceding extension fields) as associated data. Responses
carry their new cookies inside the authenticator's ciphertext.
"""
import secrets
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Tuple

import structlog
from Crypto.Cipher import AES

from ntp_pester.engine.ntp_codec import (
    ExtensionField,
    ExtensionFieldType,
    NtpPacket,
    RequestIdentifier,
    iter_extension_fields,
)
from ntp_pester.exceptions import InvalidExtensionLength, NtsAuthenticationError

logger = structlog.get_logger()

SIV_TAG_LEN = 16
NONCE_LEN = 16


class AeadAlgorithm(IntEnum):
    """IANA AEAD identifiers with SIV variants usable for NTS"""

    AEAD_AES_SIV_CMAC_256 = 15
    AEAD_AES_SIV_CMAC_384 = 16
    AEAD_AES_SIV_CMAC_512 = 17

    @property
    def key_length(self) -> int:
        return {15: 32, 16: 48, 17: 64}[self.value]


class NtsCipher:
    """
    AES-SIV cipher bound to one derived key.

    Output layout follows RFC 5297: the 16 byte synthetic IV is prepended to
    the ciphertext. The nonce is the last associated data component.
    """

    def __init__(self, key: bytes, algorithm: AeadAlgorithm = AeadAlgorithm.AEAD_AES_SIV_CMAC_256):
        if len(key) != algorithm.key_length:
            raise ValueError(f"{algorithm.name} needs a {algorithm.key_length} byte key, got {len(key)}")
        self.key = bytes(key)
        self.algorithm = algorithm

    def encrypt(self, plaintext: bytes, associated_data: bytes, nonce: Optional[bytes] = None) -> Tuple[bytes, bytes]:
        """Returns (nonce, siv || ciphertext)."""
        nonce = nonce or secrets.token_bytes(NONCE_LEN)
        cipher = AES.new(self.key, AES.MODE_SIV, nonce=nonce)
        cipher.update(associated_data)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return nonce, tag + ciphertext

    def decrypt(self, nonce: bytes, ciphertext: bytes, associated_data: bytes) -> bytes:
        """
        Raises:
            NtsAuthenticationError: If the tag does not verify or the nonce is unusable
        """
        if len(ciphertext) < SIV_TAG_LEN:
            raise NtsAuthenticationError(
                f"Ciphertext of {len(ciphertext)} bytes is shorter than the SIV tag",
                details={"length": len(ciphertext)},
            )
        try:
            cipher = AES.new(self.key, AES.MODE_SIV, nonce=nonce)
            cipher.update(associated_data)
            return cipher.decrypt_and_verify(ciphertext[SIV_TAG_LEN:], ciphertext[:SIV_TAG_LEN])
        except ValueError as e:
            raise NtsAuthenticationError("AEAD authentication failed", details={"error": str(e)})

    def __repr__(self) -> str:
        return f"NtsCipher({self.algorithm.name})"


@dataclass(frozen=True)
class NtsKeys:
    """Client-to-server and server-to-client ciphers from one NTS-KE handshake"""

    c2s: NtsCipher
    s2c: NtsCipher


def parse_authenticator(payload: bytes) -> Tuple[bytes, bytes]:
    """
    Split an authenticator field value into (nonce, ciphertext).

    Raises:
        InvalidExtensionLength: If the nonce is empty or the declared lengths do not fit
    """
    if len(payload) < 4:
        raise InvalidExtensionLength("Authenticator field too short for its length header")
    nonce_len, ciphertext_len = struct.unpack_from(">HH", payload)
    if nonce_len == 0:
        raise InvalidExtensionLength("Authenticator carries an empty nonce", details={"nonce_len": 0})
    nonce_start = 4
    ciphertext_start = nonce_start + nonce_len + (-nonce_len % 4)
    ciphertext_end = ciphertext_start + ciphertext_len
    if ciphertext_end > len(payload):
        raise InvalidExtensionLength(
            "Authenticator nonce and ciphertext lengths exceed the field",
            details={"nonce_len": nonce_len, "ciphertext_len": ciphertext_len, "field_len": len(payload)},
        )
    return (
        payload[nonce_start:nonce_start + nonce_len],
        payload[ciphertext_start:ciphertext_end],
    )


def build_nts_request(
    packet: NtpPacket,
    cookie: bytes,
    c2s: NtsCipher,
    placeholders: int = 0,
    uid: Optional[bytes] = None,
    plaintext_fields: Optional[List[ExtensionField]] = None,
) -> Tuple[bytes, RequestIdentifier]:
    """
    Protect a request with NTS.

    Extension fields already on packet are kept in front of the NTS fields.
    plaintext_fields are placed inside the encrypted part.
    """
    uid_field = ExtensionField.unique_identifier(uid)
    fields = [uid_field, ExtensionField.nts_cookie(cookie)]
    fields.extend(ExtensionField.cookie_placeholder(len(cookie)) for _ in range(placeholders))
    associated = packet.with_fields(*fields).encode()

    plaintext = b"".join(ef.encode() for ef in plaintext_fields or [])
    nonce, ciphertext = c2s.encrypt(plaintext, associated)
    data = associated + ExtensionField.authenticator(nonce, ciphertext).encode()

    identifier = RequestIdentifier(
        expected_origin_timestamp=packet.transmit_timestamp,
        uid=uid_field.payload,
    )
    return data, identifier


def open_nts_response(data: bytes, s2c: NtsCipher) -> Tuple[NtpPacket, bool, List[ExtensionField]]:
    """
    Decode and authenticate an NTS response.

    Returns (packet, authenticated, encrypted_fields). A response without an
    authenticator field (e.g. an NTS NAK) is returned unauthenticated.

    Raises:
        DecodeError: If data is not a valid NTP packet
        NtsAuthenticationError: If the authenticator does not verify
    """
    packet = NtpPacket.decode(data)
    for offset, ef in iter_extension_fields(data):
        if ef.field_type != ExtensionFieldType.NTS_AUTHENTICATOR:
            continue
        nonce, ciphertext = parse_authenticator(ef.payload)
        plaintext = s2c.decrypt(nonce, ciphertext, data[:offset])
        encrypted = [field for _, field in iter_extension_fields(plaintext, offset=0)]
        return packet, True, encrypted

    logger.debug("nts_response_unauthenticated", stratum=packet.stratum, kiss_code=packet.kiss_code)
    return packet, False, []
