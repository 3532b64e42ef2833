import json
import logging
import threading
import time

import pytest
from unittest.mock import MagicMock, patch

from cryptography.hazmat.primitives import serialization

from snp_attestd.attestation.abi_sevsnp import AttestationReport
from snp_attestd.attestation.cert_cache import CertificateCache
from snp_attestd.attestation.types import (
    CertificateFetchError,
    ClientError,
    InternalError,
    PolicyParseError,
    ReportSourceError,
    UnsupportedOperationError,
)
from snp_attestd.config import ServiceConfig
from snp_attestd.report_source import ConfigfsTsmReportSource
from snp_attestd.service import CHAIN_FAILED, SIGNATURE_FAILED, AttestationService

from conftest import (
    CHIP_ID,
    REPORTED_TCB,
    SigningReportSource,
    build_pki,
    build_report,
    der,
    sign_report,
)


NO_DEBUG_POLICY = json.dumps([
    {"name": "no-debug", "field": "policy", "operator": "bit_clear", "value": 19},
    {"name": "vmpl0", "field": "vmpl", "operator": "eq", "value": 0},
])


@pytest.fixture
def config(anchor_dir):
    return ServiceConfig(cache_dir=str(anchor_dir), kds_base_url="https://kds.example/vcek/v1", fetch_timeout=1)


@pytest.fixture
def service(config, pki):
    return AttestationService(config, report_source=SigningReportSource(pki))


def assert_opaque(excinfo):
    assert str(excinfo.value) == "internal server error"
    assert excinfo.value.__cause__ is None
    assert excinfo.value.__suppress_context__


class TestIssueReport:

    def test_issue_with_certificate(self, service, pki, kds_response):
        with patch("requests.get", return_value=kds_response(der(pki.vcek))) as get:
            issued = service.issue_report(b"\x00" * 32, include_certificate=True)

        report = AttestationReport.decode(issued.report)
        assert report.report_data[:32] == b"\x00" * 32
        assert issued.certificate == der(pki.vcek)
        assert CHIP_ID.hex() in get.call_args.args[0]

    def test_issue_without_certificate(self, service):
        with patch("requests.get") as get:
            issued = service.issue_report(b"nonce")
        get.assert_not_called()
        assert issued.certificate is None
        assert AttestationReport.decode(issued.report).report_data == b"nonce".ljust(64, b"\x00")

    def test_full_report_data(self, service):
        report_data = bytes(range(64))
        issued = service.issue_report(report_data)
        assert AttestationReport.decode(issued.report).report_data == report_data

    def test_report_data_too_long(self, service):
        with pytest.raises(ClientError, match="got 65 bytes"):
            service.issue_report(b"\x00" * 65)
        assert service.report_source.calls == 0

    def test_verify_only(self, anchor_dir, pki):
        source = SigningReportSource(pki)
        config = ServiceConfig(cache_dir=str(anchor_dir), verify_only=True)
        service = AttestationService(config, report_source=source)
        with pytest.raises(UnsupportedOperationError) as excinfo:
            service.issue_report(b"")
        assert isinstance(excinfo.value, ClientError)
        assert source.calls == 0

    def test_verify_only_does_not_open_device(self, anchor_dir):
        service = AttestationService(ServiceConfig(cache_dir=str(anchor_dir), verify_only=True))
        assert service.report_source is None

    def test_default_source_is_configfs(self, config):
        config.tsm_report_dir = "/nonexistent/tsm"
        service = AttestationService(config)
        assert isinstance(service.report_source, ConfigfsTsmReportSource)
        assert service.report_source.tsm_report_dir == "/nonexistent/tsm"

    def test_source_failure_is_opaque(self, config, caplog):
        source = MagicMock()
        source.get_report.side_effect = ReportSourceError("firmware said no: 0x16")
        service = AttestationService(config, report_source=source)

        with caplog.at_level(logging.ERROR), pytest.raises(InternalError) as excinfo:
            service.issue_report(b"")
        assert_opaque(excinfo)
        assert "firmware said no" in caplog.text
        assert "firmware said no" not in str(excinfo.value)

    def test_source_returns_garbage(self, config):
        source = MagicMock()
        source.get_report.return_value = b"\x00" * 16
        with pytest.raises(InternalError) as excinfo:
            AttestationService(config, report_source=source).issue_report(b"")
        assert_opaque(excinfo)

    def test_certificate_fetch_failure(self, config, pki):
        cache = MagicMock(spec=CertificateCache)
        cache.get.side_effect = CertificateFetchError("kds down")
        service = AttestationService(config, report_source=SigningReportSource(pki), cache=cache)
        with pytest.raises(InternalError) as excinfo:
            service.issue_report(b"", include_certificate=True)
        assert_opaque(excinfo)

    def test_source_calls_are_serialized(self, config):
        state = {"active": 0, "max_active": 0}
        state_lock = threading.Lock()
        raw = build_report().encode()

        class SlowSource:
            def get_report(self, report_data):
                with state_lock:
                    state["active"] += 1
                    state["max_active"] = max(state["max_active"], state["active"])
                time.sleep(0.01)
                with state_lock:
                    state["active"] -= 1
                return raw

        service = AttestationService(config, report_source=SlowSource())
        threads = [threading.Thread(target=service.issue_report, args=(b"",)) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert state["max_active"] == 1


class TestVerifyReport:

    def test_issued_report_verifies(self, service, pki):
        issued = service.issue_report(b"\x00" * 32)
        result = service.verify_report(issued.report, der(pki.vcek), "[]")
        assert result.ok
        assert result.reasons == []

    def test_does_not_use_report_source(self, service, pki, signed_report):
        results = []
        worker = threading.Thread(
            target=lambda: results.append(service.verify_report(signed_report, der(pki.vcek), "[]"))
        )
        service._source_lock.acquire()
        try:
            worker.start()
            worker.join(timeout=10)
            assert not worker.is_alive()
        finally:
            service._source_lock.release()

        assert results[0].ok
        assert service.report_source.calls == 0

    def test_policy_passes(self, service, pki, signed_report):
        assert service.verify_report(signed_report, der(pki.vcek), NO_DEBUG_POLICY).ok

    def test_pem_certificate_accepted(self, service, pki, signed_report):
        pem = pki.vcek.public_bytes(serialization.Encoding.PEM)
        assert service.verify_report(signed_report, pem, "[]").ok

    def test_policy_failure(self, service, pki):
        raw = sign_report(build_report(policy=(1 << 17) | (1 << 19), vmpl=1), pki.vcek_key)
        result = service.verify_report(raw, der(pki.vcek), NO_DEBUG_POLICY)
        assert not result.ok
        assert result.reasons == ["no-debug", "vmpl0"]

    def test_chain_failure(self, service, signed_report):
        other = build_pki()
        result = service.verify_report(signed_report, der(other.vcek), "[]")
        assert not result.ok
        assert result.reasons == [CHAIN_FAILED]

    def test_vcek_for_other_chip(self, service, pki):
        raw = sign_report(build_report(chip_id=b"\x42" * 64), pki.vcek_key)
        result = service.verify_report(raw, der(pki.vcek), "[]")
        assert result.reasons == [CHAIN_FAILED]

    def test_signature_failure(self, service, pki):
        raw = sign_report(build_report(), build_pki().vcek_key)
        result = service.verify_report(raw, der(pki.vcek), "[]")
        assert not result.ok
        assert result.reasons == [SIGNATURE_FAILED]

    def test_tampered_report(self, service, pki, signed_report):
        raw = bytearray(signed_report)
        raw[0x90] ^= 0x01  # measurement
        result = service.verify_report(bytes(raw), der(pki.vcek), "[]")
        assert result.reasons == [SIGNATURE_FAILED]

    def test_bad_chain_wins_over_bad_policy(self, service, signed_report):
        result = service.verify_report(signed_report, der(build_pki().vcek), "not-json")
        assert result.reasons == [CHAIN_FAILED]

    def test_bad_signature_wins_over_bad_policy(self, service, pki):
        raw = sign_report(build_report(), build_pki().vcek_key)
        result = service.verify_report(raw, der(pki.vcek), "not-json")
        assert result.reasons == [SIGNATURE_FAILED]

    def test_malformed_policy(self, service, pki, signed_report):
        with pytest.raises(PolicyParseError) as excinfo:
            service.verify_report(signed_report, der(pki.vcek), "not-json")
        assert isinstance(excinfo.value, ClientError)
        assert "JSON" in str(excinfo.value)

    @pytest.mark.parametrize("raw", [b"", b"\x00" * 100])
    def test_malformed_report(self, service, pki, raw):
        with pytest.raises(ClientError, match="could not decode the attestation report"):
            service.verify_report(raw, der(pki.vcek), "[]")

    def test_malformed_certificate(self, service, signed_report):
        with pytest.raises(ClientError, match="could not decode the VCEK certificate"):
            service.verify_report(signed_report, b"not a certificate", "[]")

    def test_missing_trust_anchors(self, tmp_path, pki, signed_report, caplog):
        service = AttestationService(ServiceConfig(cache_dir=str(tmp_path), verify_only=True))
        with caplog.at_level(logging.ERROR), pytest.raises(InternalError) as excinfo:
            service.verify_report(signed_report, der(pki.vcek), "[]")
        assert_opaque(excinfo)
        assert "ask.crt" in caplog.text


class TestVerifyWithCache:
    """Verification without a caller-supplied VCEK"""

    def test_fetches_then_hits_cache(self, service, pki, signed_report, kds_response):
        with patch("requests.get", return_value=kds_response(der(pki.vcek))) as get:
            assert service.verify_report(signed_report, None, "[]").ok
            assert service.verify_report(signed_report, b"", "[]").ok
        assert get.call_count == 1

    def test_fetch_failure(self, config, pki, signed_report):
        cache = MagicMock(spec=CertificateCache)
        cache.get.side_effect = CertificateFetchError("kds down")
        service = AttestationService(config, report_source=SigningReportSource(pki), cache=cache)
        with pytest.raises(InternalError) as excinfo:
            service.verify_report(signed_report, None, "[]")
        assert_opaque(excinfo)

    def test_corrupt_cache_entry_is_evicted(self, config, pki, signed_report):
        cache = MagicMock(spec=CertificateCache)
        cache.get.return_value = b"garbage"
        service = AttestationService(config, cache=cache)
        with pytest.raises(InternalError):
            service.verify_report(signed_report, None, "[]")
        cache.evict.assert_called_once_with(CHIP_ID, REPORTED_TCB)

    def test_product_from_report(self, config, pki):
        cache = MagicMock(spec=CertificateCache)
        cache.get.return_value = der(pki.vcek)
        service = AttestationService(config, cache=cache)

        raw = sign_report(build_report(cpuid_fam_id=0x19, cpuid_mod_id=0x11), pki.vcek_key)
        service.verify_report(raw, None, "[]")
        assert cache.get.call_args.args[2] == "Genoa"

    @pytest.mark.parametrize("family,model", [(0x17, 0x31), (0x1A, 0x02)])
    def test_unknown_product_uses_default(self, config, pki, family, model):
        config.default_product = "Genoa"
        cache = MagicMock(spec=CertificateCache)
        cache.get.return_value = der(pki.vcek)
        service = AttestationService(config, cache=cache)

        raw = sign_report(build_report(cpuid_fam_id=family, cpuid_mod_id=model), pki.vcek_key)
        assert service.verify_report(raw, None, "[]").ok
        assert cache.get.call_args.args[2] == "Genoa"
