"""
Attestation service: report issuance and report verification.

Outcomes are split in three classes:

* ``ClientError`` is raised for malformed requests; its message is safe to
  return to the caller.
* A well-formed report that fails a cryptographic or policy check yields
  ``VerificationResult(ok=False, ...)``. That is never an error.
* Environment faults are logged with full detail and raised as one opaque
  ``InternalError``, so callers cannot tell which stage failed.
"""

import logging
import threading
from typing import Optional, Union

from cryptography import x509

from .attestation.abi_sevsnp import AttestationReport, REPORT_DATA_SIZE
from .attestation.cert_cache import CertificateCache, KdsClient
from .attestation.policy import evaluate_policy, parse_policy
from .attestation.trust_anchors import TrustAnchorStore, load_certificate
from .attestation.types import (
    AttestationError,
    ClientError,
    FormatError,
    InternalError,
    IssuedReport,
    UnsupportedOperationError,
    VerificationResult,
)
from .attestation.verify import verify_chain, verify_report_signature
from .config import ServiceConfig
from .report_source import ConfigfsTsmReportSource, ReportSource

CHAIN_FAILED = "certificate chain verification failed"
SIGNATURE_FAILED = "report signature verification failed"


class AttestationService:
    """Issues and verifies SEV-SNP attestation reports.

    Requests share no mutable state apart from the report source, which is
    guarded by a lock because the underlying interface is not reentrant.
    """

    def __init__(
        self,
        config: ServiceConfig,
        report_source: Optional[ReportSource] = None,
        cache: Optional[CertificateCache] = None,
        anchors: Optional[TrustAnchorStore] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.log = logger or logging.getLogger(__name__)

        if report_source is None and not config.verify_only:
            report_source = ConfigfsTsmReportSource(config.tsm_report_dir)
        self.report_source = report_source
        self._source_lock = threading.Lock()

        if cache is None:
            kds = KdsClient(config.kds_base_url, timeout=config.fetch_timeout)
            cache = CertificateCache(config.cache_dir, kds, default_product=config.default_product)
        self.cache = cache
        self.anchors = anchors or TrustAnchorStore(config.cache_dir)

    # =========================================================================
    # Report issuance
    # =========================================================================

    def issue_report(self, report_data: bytes, include_certificate: bool = False) -> IssuedReport:
        """
        Obtain a live report binding *report_data* and optionally its VCEK.

        Raises:
            UnsupportedOperationError: In verify-only mode
            ClientError: If report_data is longer than 64 bytes
            InternalError: If the report or the certificate cannot be obtained
        """
        if self.config.verify_only or self.report_source is None:
            self.log.debug("Got report request while in verify only mode. Ignoring.")
            raise UnsupportedOperationError(
                "the service is in verify only mode and cannot provide attestation reports"
            )

        if len(report_data) > REPORT_DATA_SIZE:
            self.log.debug("Got a report request with %d bytes of report data. Refusing.", len(report_data))
            raise ClientError(f"expected at most {REPORT_DATA_SIZE} bytes of report data, got {len(report_data)} bytes")

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("Got a report request with report data %s", report_data.hex())

        try:
            with self._source_lock:
                raw = self.report_source.get_report(report_data)
            report = AttestationReport.decode(raw)
        except (AttestationError, OSError) as e:
            self.log.error("Error retrieving report from the SEV firmware: %s", e)
            raise InternalError() from None

        certificate = None
        if include_certificate:
            try:
                certificate = self.cache.get(report.chip_id, report.reported_tcb, self._product(report))
            except (AttestationError, OSError) as e:
                self.log.error("Could not fetch VCEK certificate: %s", e)
                raise InternalError() from None

        return IssuedReport(report=report.encode(), certificate=certificate)

    # =========================================================================
    # Report verification
    # =========================================================================

    def verify_report(
        self,
        report: bytes,
        certificate: Optional[bytes],
        policy_document: Union[bytes, str],
    ) -> VerificationResult:
        """
        Verify a report's chain of trust, signature and policy, in that order.

        Raises:
            ClientError: If the report or the supplied certificate is
                malformed; PolicyParseError if the policy document is
            InternalError: On any environment fault
        """
        self.log.debug("Got Verify Request")
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("Policy: %r", policy_document)

        try:
            decoded = AttestationReport.decode(report)
        except FormatError as e:
            self.log.debug("Could not decode the attestation report: %s", e)
            raise ClientError(f"could not decode the attestation report: {e}") from e

        try:
            ask, ark = self.anchors.load()
        except AttestationError as e:
            self.log.error("Could not load the VCEK certificate chain: %s", e)
            raise InternalError() from None

        vcek = self._resolve_vcek(decoded, certificate)

        # Step one: the VCEK is signed by AMD and issued for this chip and TCB
        if not verify_chain(vcek, ask, ark, decoded):
            self.log.debug("Report verification failed as the VCEK certificate could not be verified.")
            return VerificationResult(ok=False, reasons=[CHAIN_FAILED])

        # Step two: the report signature
        try:
            ok = verify_report_signature(report, vcek)
        except AttestationError as e:
            self.log.error("Error trying to verify the report's signature: %s", e)
            raise InternalError() from None
        if not ok:
            self.log.debug("Report verification failed as the report's signature could not be verified.")
            return VerificationResult(ok=False, reasons=[SIGNATURE_FAILED])

        # Step three: policy. A parse failure is a caller error with detail.
        policy = parse_policy(policy_document)
        result = evaluate_policy(policy, decoded)
        if not result.ok:
            self.log.debug("Report verification failed as the report did not pass the policy check: %s", result.failed)
            return VerificationResult(ok=False, reasons=result.failed)

        self.log.debug("Report verification succeeded")
        return VerificationResult(ok=True)

    def _resolve_vcek(self, report: AttestationReport, certificate: Optional[bytes]) -> x509.Certificate:
        if certificate:
            try:
                return load_certificate(certificate)
            except ValueError as e:
                self.log.debug("Could not decode the supplied VCEK certificate: %s", e)
                raise ClientError(f"could not decode the VCEK certificate: {e}") from e

        try:
            data = self.cache.get(report.chip_id, report.reported_tcb, self._product(report))
        except (AttestationError, OSError) as e:
            self.log.error("Could not fetch VCEK certificate: %s", e)
            raise InternalError() from None

        try:
            return load_certificate(data)
        except ValueError as e:
            # Corrupted cache? Remove it so the next request refetches.
            self.log.error("Could not decode the VCEK certificate: %s", e)
            self.cache.evict(report.chip_id, report.reported_tcb)
            raise InternalError() from None

    def _product(self, report: AttestationReport) -> str:
        product = report.product_name
        return self.config.default_product if product == "Unknown" else product
