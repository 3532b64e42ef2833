"""
Shared errors and result types for report verification.

This module is the canonical source for types used across the attestation
modules and the service. It has no intra-package dependencies, so any module
can import from it without risk of circular imports.
"""

from dataclasses import dataclass, field
from typing import List, Optional


# =============================================================================
# Errors
# =============================================================================

class AttestationError(Exception):
    """Base class for attestation errors"""
    pass

class FormatError(AttestationError, ValueError):
    """Raised when an attestation report cannot be decoded"""
    pass

class ClientError(AttestationError):
    """Raised when a request is malformed. The message is safe to expose."""
    pass

class PolicyParseError(ClientError):
    """Raised when a policy document cannot be parsed"""
    pass

class UnsupportedOperationError(ClientError):
    """Raised when an operation is not available in the current service mode"""
    pass

class InternalError(AttestationError):
    """Opaque failure returned to callers; the detail only goes to the log."""

    def __init__(self, message: str = "internal server error"):
        super().__init__(message)

class TrustAnchorError(AttestationError):
    """Raised when the ASK/ARK trust anchors are missing or corrupt"""
    pass

class CacheReadError(AttestationError):
    """Raised when the VCEK cache cannot be read or created"""
    pass

class CertificateFetchError(AttestationError):
    """Raised when a certificate cannot be fetched from the KDS"""
    pass

class SignatureFormatError(AttestationError):
    """Raised when the signing key or the signature is structurally invalid"""
    pass

class ReportSourceError(AttestationError):
    """Raised when the platform cannot produce an attestation report"""
    pass


# =============================================================================
# Result types
# =============================================================================

@dataclass
class PolicyResult:
    """Outcome of a policy evaluation"""
    ok: bool
    failed: List[str] = field(default_factory=list)

@dataclass
class VerificationResult:
    """Outcome of a report verification. A negative outcome is not an error."""
    ok: bool
    reasons: List[str] = field(default_factory=list)

@dataclass
class IssuedReport:
    """A freshly issued report and, if requested, its VCEK certificate"""
    report: bytes
    certificate: Optional[bytes] = None
