"""
End-to-end runs of the case catalog against local fake servers.
"""
import socket
from unittest.mock import AsyncMock, patch

import pytest

from ntp_pester.cases import all_tests, basic, nts
from ntp_pester.config import RunConfig
from ntp_pester.engine.nts_crypto import AeadAlgorithm, NtsCipher, NtsKeys
from ntp_pester.engine.nts_ke import NtsKeyMaterial
from ntp_pester.engine.registry import Registry, nts_test, udp_test
from ntp_pester.engine.runner import TestRunner
from ntp_pester.engine.target import NtsSessionSource, prepare_target
from ntp_pester.exceptions import NtsKeConnectError, TargetResolutionError
from ntp_pester.models import OutcomeKind

from ntp_server import FakeNtpServer

KEYS = NtsKeys(c2s=NtsCipher(bytes(range(32))), s2c=NtsCipher(bytes(range(32, 64))))


def _free_udp_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def _free_tcp_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


async def _run(registry: Registry, config: RunConfig):
    context = await prepare_target(config)
    return await TestRunner(registry, context).run()


def _outcomes(report):
    return {entry.name: entry.outcome for entry in report.entries}


class TestCatalog:
    """Tests for the catalog itself."""

    def test_all_tests(self):
        """Test that the catalog lists every case once, in a stable order."""
        registry = all_tests()

        assert registry.names[:3] == [
            "basic.test_responds_to_version_4",
            "basic.test_responds_to_version_3",
            "basic.test_ignores_version_5",
        ]
        assert "nts.happy" in registry
        assert "nts_ke.empty_message_resolves_in_error" in registry
        assert len(registry) == 14


class TestUdpCases:
    """UDP cases against the fake NTP server."""

    @pytest.mark.asyncio
    async def test_responds_to_version_4_passes(self):
        """Test the basic poll against a conforming server."""
        async with FakeNtpServer() as server:
            config = RunConfig(target="127.0.0.1", port=server.port, timeout=0.5)
            report = await _run(Registry([udp_test(basic.test_responds_to_version_4)]), config)

        outcome = report.entries[0].outcome
        assert outcome.kind == OutcomeKind.PASSED, outcome

    @pytest.mark.asyncio
    async def test_conforming_server_passes_udp_cases(self):
        """Test that every plain NTP case passes against a conforming server."""
        async with FakeNtpServer() as server:
            config = RunConfig(target="127.0.0.1", port=server.port, timeout=0.2)
            report = await _run(all_tests().select(["basic.", "extensions."]), config)

        assert len(report.entries) == 6
        for name, outcome in _outcomes(report).items():
            assert outcome.kind == OutcomeKind.PASSED, (name, outcome)

    @pytest.mark.asyncio
    async def test_ignores_version_5_fails_when_server_is_silent(self):
        """Test that a silent server fails the liveness probe after the v5 case."""
        async with FakeNtpServer(respond=False) as server:
            config = RunConfig(target="127.0.0.1", port=server.port, timeout=0.1)
            report = await _run(Registry([udp_test(basic.test_ignores_version_5)]), config)

        outcome = report.entries[0].outcome
        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.reason == "Server did no longer reply to normal poll"

    @pytest.mark.asyncio
    async def test_undecodable_reply_fails_with_raw_dump(self):
        """Test that a reply that does not decode fails the case and shows its bytes."""
        async with FakeNtpServer(garbage=True) as server:
            config = RunConfig(target="127.0.0.1", port=server.port, timeout=0.1)
            report = await _run(Registry([udp_test(basic.test_responds_to_version_4)]), config)

        outcome = report.entries[0].outcome
        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.reason.startswith("Server replied with invalid packet")
        assert outcome.detail == "raw: " + "00" * 10
        assert any("raw: " + "00" * 10 in line for line in report.lines())

    @pytest.mark.asyncio
    async def test_unreachable_target_errors(self):
        """Test that an unreachable UDP port errors the cases instead of failing them."""
        config = RunConfig(target="127.0.0.1", port=_free_udp_port(), timeout=0.5)
        registry = Registry([
            udp_test(basic.test_responds_to_version_4),
            udp_test(basic.test_ignores_version_5),
        ])

        report = await _run(registry, config)

        for name, outcome in _outcomes(report).items():
            assert outcome.kind == OutcomeKind.ERRORED, (name, outcome)

    @pytest.mark.asyncio
    async def test_nts_disabled_skips_without_key_exchange(self):
        """Test that NTS and NTS-KE cases are skipped and no NTS-KE is attempted."""
        establish = AsyncMock()
        async with FakeNtpServer() as server:
            config = RunConfig(target="127.0.0.1", port=server.port, timeout=0.2)
            with patch("ntp_pester.engine.target.establish", establish):
                report = await _run(all_tests(), config)

        establish.assert_not_called()
        outcomes = _outcomes(report)
        for name, outcome in outcomes.items():
            if name.startswith(("nts.", "nts_ke.")):
                assert outcome.kind == OutcomeKind.SKIPPED
                assert outcome.reason == "NTS not enabled"
        assert report.counts()[OutcomeKind.SKIPPED] == 8
        assert report.success is True

    @pytest.mark.asyncio
    async def test_unresolvable_target_aborts(self):
        """Test that a name that does not resolve aborts before any case."""
        config = RunConfig(target="does-not-exist.invalid")

        with pytest.raises(TargetResolutionError):
            await prepare_target(config)


class TestNtsCases:
    """NTS cases with key establishment replaced by fixed key material."""

    @pytest.mark.asyncio
    async def test_nts_cases_pass(self):
        """Test the NTS cases against an NTS-capable fake server."""
        cookies = [bytes([i]) * 64 for i in range(8)]
        async with FakeNtpServer(keys=KEYS, cookies=cookies) as server:
            material = NtsKeyMaterial(
                aead=AeadAlgorithm.AEAD_AES_SIV_CMAC_256,
                cookies=tuple(cookies),
                keys=KEYS,
                ntp_host="127.0.0.1",
                ntp_port=server.port,
            )
            config = RunConfig(target="127.0.0.1", timeout=0.5, nts_enabled=True)
            registry = Registry([nts_test(nts.happy), nts_test(nts.test_invalid_cookie_is_rejected)])
            with patch.object(NtsSessionSource, "_establish", AsyncMock(return_value=material)):
                report = await _run(registry, config)

        for name, outcome in _outcomes(report).items():
            assert outcome.kind == OutcomeKind.PASSED, (name, outcome)

    @pytest.mark.asyncio
    async def test_bootstrap_failure_errors_nts_cases(self):
        """Test that a failed initial NTS-KE errors every NTS case with its cause."""
        failure = AsyncMock(side_effect=NtsKeConnectError("Connection timeout to 127.0.0.1:4460"))
        config = RunConfig(target="127.0.0.1", timeout=0.2, nts_enabled=True, ke_port=_free_tcp_port())

        with patch.object(NtsSessionSource, "_establish", failure):
            report = await _run(all_tests().select(["nts.", "nts_ke."]), config)

        failure.assert_awaited_once()
        for name, outcome in _outcomes(report).items():
            assert outcome.kind == OutcomeKind.ERRORED, (name, outcome)
            if name.startswith("nts."):
                assert "Connection timeout" in outcome.reason

    @pytest.mark.asyncio
    async def test_reply_without_nonce_fails(self):
        """Test that a reply sealed without nonce fails the NTS case with the datagram attached."""
        cookies = [bytes([i]) * 64 for i in range(8)]
        async with FakeNtpServer(keys=KEYS, cookies=cookies, empty_nonce=True) as server:
            material = NtsKeyMaterial(
                aead=AeadAlgorithm.AEAD_AES_SIV_CMAC_256,
                cookies=tuple(cookies),
                keys=KEYS,
                ntp_host="127.0.0.1",
                ntp_port=server.port,
            )
            config = RunConfig(target="127.0.0.1", timeout=0.1, nts_enabled=True)
            with patch.object(NtsSessionSource, "_establish", AsyncMock(return_value=material)):
                report = await _run(Registry([nts_test(nts.happy)]), config)

        outcome = report.entries[0].outcome
        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.reason.startswith("Server replied with invalid packet")
        assert outcome.detail.startswith("raw: ")
