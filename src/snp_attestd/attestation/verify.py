"""
AMD SEV-SNP report verification: VCEK chain of trust and report signature.
"""

import logging
from typing import Dict, TypeAlias

from OpenSSL import crypto
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, utils
from cryptography.x509.oid import ObjectIdentifier
from pyasn1.codec.der import encoder as der_encoder
from pyasn1.type import univ

from .abi_sevsnp import (
    AttestationReport,
    ECDSA_RS_SIZE,
    REPORT_SIZE,
    SIGNATURE_ALGO_ECDSA_P384_SHA384,
    SIGNATURE_OFFSET,
    TCBParts,
)
from .types import SignatureFormatError

logger = logging.getLogger(__name__)

# Type alias for certificate extensions
Extensions: TypeAlias = Dict[ObjectIdentifier, bytes]

# vcek -> ask -> ark
CHAIN_LENGTH = 3


class SnpOid:
    """OID extensions for the VCEK, used to verify attestation report"""
    BL_SPL = ObjectIdentifier("1.3.6.1.4.1.3704.1.3.1")
    TEE_SPL = ObjectIdentifier("1.3.6.1.4.1.3704.1.3.2")
    SNP_SPL = ObjectIdentifier("1.3.6.1.4.1.3704.1.3.3")
    UCODE = ObjectIdentifier("1.3.6.1.4.1.3704.1.3.8")
    HWID = ObjectIdentifier("1.3.6.1.4.1.3704.1.4")


# TCB component carried by each SPL extension
TCB_EXTENSIONS = (
    (SnpOid.BL_SPL, "bl_spl"),
    (SnpOid.TEE_SPL, "tee_spl"),
    (SnpOid.SNP_SPL, "snp_spl"),
    (SnpOid.UCODE, "ucode_spl"),
)


def verify_chain(
    vcek: x509.Certificate,
    ask: x509.Certificate,
    ark: x509.Certificate,
    report: AttestationReport,
) -> bool:
    """
    Verify that the VCEK chains to the ARK through the ASK, and that the VCEK
    was issued for the chip and TCB the report claims.

    A negative outcome is returned as False, never raised.
    """
    if not verify_cert_chain(vcek, ask, ark):
        logger.debug("VCEK certificate's signature chain could not be verified")
        return False

    if not verify_vcek_extensions(vcek, report.chip_id, report.reported_tcb):
        logger.debug("VCEK certificate's X.509 extensions did not match the report")
        return False

    return True


def verify_cert_chain(vcek: x509.Certificate, ask: x509.Certificate, ark: x509.Certificate) -> bool:
    """Build the VCEK's path with ARK as the only root and ASK as the only intermediate.

    Succeeds only for exactly one path of exactly [vcek, ask, ark].
    """
    store = crypto.X509Store()
    store.add_cert(crypto.X509.from_cryptography(ark))

    store_ctx = crypto.X509StoreContext(
        store,
        crypto.X509.from_cryptography(vcek),
        chain=[crypto.X509.from_cryptography(ask)],
    )

    try:
        verified = store_ctx.get_verified_chain()
    except crypto.X509StoreContextError as e:
        logger.debug("Certificate chain verification failed: %s", e)
        return False

    path = [cert.to_cryptography() for cert in verified]
    if len(path) != CHAIN_LENGTH:
        logger.debug("Expected a certificate path of length %d, got %d", CHAIN_LENGTH, len(path))
        return False

    return path == [vcek, ask, ark]


def verify_vcek_extensions(vcek: x509.Certificate, chip_id: bytes, tcb: TCBParts) -> bool:
    """Check the VCEK's HWID and SPL extensions byte-for-byte against the report"""
    extensions = _get_certificate_extensions(vcek)

    if extensions.get(SnpOid.HWID) != chip_id:
        logger.debug("HWID extension in VCEK certificate does not match chip_id")
        return False

    for oid, component in TCB_EXTENSIONS:
        expected = _encode_der_integer(getattr(tcb, component))
        actual = extensions.get(oid)
        if actual != expected:
            logger.debug(
                "%s extension in VCEK certificate does not match tcb.%s: %s != %s",
                oid.dotted_string, component,
                actual.hex() if actual is not None else None, expected.hex(),
            )
            return False

    return True


def verify_report_signature(raw_report: bytes, vcek: x509.Certificate) -> bool:
    """
    Verify the attestation report signature using VCEK's public key.

    Returns False on mismatch or for an unknown signature algorithm.

    Raises:
        SignatureFormatError: If the report is truncated or the VCEK does not
            hold a P-384 EC key
    """
    if len(raw_report) < REPORT_SIZE:
        raise SignatureFormatError(f"Report is 0x{len(raw_report):x} bytes, expected 0x{REPORT_SIZE:x}")

    signature_algo = int.from_bytes(raw_report[0x34:0x38], byteorder='little')
    if signature_algo != SIGNATURE_ALGO_ECDSA_P384_SHA384:
        logger.debug("Unknown SignatureAlgo: %d", signature_algo)
        return False

    public_key = vcek.public_key()
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise SignatureFormatError("VCEK doesn't contain an EC public key")
    if public_key.curve.name != "secp384r1":
        raise SignatureFormatError(f"VCEK public key curve is not secp384r1 but {public_key.curve.name}")

    der_signature = _signature_to_der(raw_report[SIGNATURE_OFFSET:SIGNATURE_OFFSET + 2 * ECDSA_RS_SIZE])

    try:
        public_key.verify(
            der_signature,
            raw_report[:SIGNATURE_OFFSET],
            ec.ECDSA(hashes.SHA384()),
        )
    except InvalidSignature:
        logger.debug("Attestation signature verification failed")
        return False
    return True


## HELPER FUNCTIONS

def _signature_to_der(raw: bytes) -> bytes:
    """Convert AMD's little-endian R || S (72 bytes each) to a DER ECDSA signature"""
    r = int.from_bytes(raw[0:ECDSA_RS_SIZE], byteorder='little')
    s = int.from_bytes(raw[ECDSA_RS_SIZE:2 * ECDSA_RS_SIZE], byteorder='little')
    return utils.encode_dss_signature(r, s)

def _get_certificate_extensions(cert: x509.Certificate) -> Extensions:
    """Get the raw values of the vendor extensions of a certificate"""
    extensions = {}
    for ext in cert.extensions:
        if isinstance(ext.value, x509.UnrecognizedExtension):
            extensions[ext.oid] = ext.value.value
    return extensions

def _encode_der_integer(value: int) -> bytes:
    """Canonical DER encoding of an INTEGER, as AMD stores the SPL extensions"""
    return der_encoder.encode(univ.Integer(value))
