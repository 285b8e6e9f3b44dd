"""
Test Case Catalog

Every case is an async function wrapped by udp_test, nts_test or ke_test:

basic/
    Plain NTP polls in supported and unsupported versions.
extensions/
    Extension field handling without NTS (RFC 7822).
nts/
    NTS-protected NTP exchanges (RFC 8915 section 5).
nts_ke/
    NTS Key Establishment behavior (RFC 8915 section 4).

Cases run in the order all_tests() lists them.
"""
from ntp_pester.cases import basic, extensions, nts, nts_ke
from ntp_pester.engine.registry import Registry, ke_test, nts_test, udp_test


def all_tests() -> Registry:
    return Registry([
        udp_test(basic.test_responds_to_version_4),
        udp_test(basic.test_responds_to_version_3),
        udp_test(basic.test_ignores_version_5),
        udp_test(extensions.test_unknown_extensions_are_ignored),
        udp_test(extensions.test_unique_id_is_returned),
        udp_test(extensions.test_invalid_extension_length_is_ignored),
        nts_test(nts.happy),
        nts_test(nts.test_invalid_cookie_is_rejected),
        ke_test(nts_ke.happy),
        ke_test(nts_ke.error_on_unknown_next_protocol),
        ke_test(nts_ke.ignore_unknown_extra_protocols),
        ke_test(nts_ke.error_on_unknown_aead),
        ke_test(nts_ke.ignore_unknown_extra_aead),
        ke_test(nts_ke.empty_message_resolves_in_error),
    ])
