from .abi_sevsnp import AttestationReport, TCBParts, REPORT_SIZE
from .cert_cache import CertificateCache, KdsClient
from .policy import Policy, parse_policy, evaluate_policy
from .trust_anchors import TrustAnchorStore
from .verify import verify_chain, verify_report_signature
from .types import (
    AttestationError,
    FormatError,
    ClientError,
    PolicyParseError,
    UnsupportedOperationError,
    InternalError,
    TrustAnchorError,
    CacheReadError,
    CertificateFetchError,
    SignatureFormatError,
    ReportSourceError,
    PolicyResult,
    VerificationResult,
    IssuedReport,
)

__all__ = [
    'AttestationReport',
    'TCBParts',
    'REPORT_SIZE',
    'CertificateCache',
    'KdsClient',
    'Policy',
    'parse_policy',
    'evaluate_policy',
    'TrustAnchorStore',
    'verify_chain',
    'verify_report_signature',
    'AttestationError',
    'FormatError',
    'ClientError',
    'PolicyParseError',
    'UnsupportedOperationError',
    'InternalError',
    'TrustAnchorError',
    'CacheReadError',
    'CertificateFetchError',
    'SignatureFormatError',
    'ReportSourceError',
    'PolicyResult',
    'VerificationResult',
    'IssuedReport',
]
