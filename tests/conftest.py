"""
Shared fixtures: a throwaway ARK -> ASK -> VCEK hierarchy and signed reports.
"""

import datetime
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import pytest
import requests
from unittest.mock import MagicMock

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID, ObjectIdentifier

from snp_attestd.attestation.abi_sevsnp import (
    AttestationReport,
    ECDSA_RS_SIZE,
    SIGNATURE_OFFSET,
    SIGNATURE_SIZE,
    TCBParts,
)
from snp_attestd.attestation.verify import SnpOid, _encode_der_integer


CHIP_ID = bytes(range(64))
REPORTED_TCB = TCBParts(bl_spl=7, tee_spl=0, snp_spl=14, ucode_spl=72)


def amd_name(cn: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Advanced Micro Devices"),
        x509.NameAttribute(NameOID.COMMON_NAME, cn),
    ])


def make_cert(
    subject_cn: str,
    public_key,
    issuer_cn: str,
    issuer_key,
    ca: bool,
    extensions: Iterable[Tuple[ObjectIdentifier, bytes]] = (),
) -> x509.Certificate:
    """Build a certificate valid from yesterday for a year."""
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(amd_name(subject_cn))
        .issuer_name(amd_name(issuer_cn))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=365))
    )
    if ca:
        builder = builder.add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    for oid, value in extensions:
        builder = builder.add_extension(x509.UnrecognizedExtension(oid, value), critical=False)
    return builder.sign(issuer_key, hashes.SHA384())


def vcek_extensions(chip_id: bytes = CHIP_ID, tcb: TCBParts = REPORTED_TCB):
    return [
        (SnpOid.BL_SPL, _encode_der_integer(tcb.bl_spl)),
        (SnpOid.TEE_SPL, _encode_der_integer(tcb.tee_spl)),
        (SnpOid.SNP_SPL, _encode_der_integer(tcb.snp_spl)),
        (SnpOid.UCODE, _encode_der_integer(tcb.ucode_spl)),
        (SnpOid.HWID, chip_id),
    ]


@dataclass
class Pki:
    ark_key: ec.EllipticCurvePrivateKey
    ask_key: ec.EllipticCurvePrivateKey
    vcek_key: ec.EllipticCurvePrivateKey
    ark: x509.Certificate
    ask: x509.Certificate
    vcek: x509.Certificate

    def issue_vcek(self, extensions=None, key=None) -> x509.Certificate:
        """A VCEK signed by this hierarchy's ASK with custom extensions"""
        key = key or self.vcek_key
        return make_cert(
            "SEV-VCEK", key.public_key(), "SEV-Milan", self.ask_key, ca=False,
            extensions=vcek_extensions() if extensions is None else extensions,
        )


def build_pki() -> Pki:
    ark_key = ec.generate_private_key(ec.SECP384R1())
    ask_key = ec.generate_private_key(ec.SECP384R1())
    vcek_key = ec.generate_private_key(ec.SECP384R1())

    ark = make_cert("ARK-Milan", ark_key.public_key(), "ARK-Milan", ark_key, ca=True)
    ask = make_cert("SEV-Milan", ask_key.public_key(), "ARK-Milan", ark_key, ca=True)
    vcek = make_cert("SEV-VCEK", vcek_key.public_key(), "SEV-Milan", ask_key, ca=False,
                     extensions=vcek_extensions())
    return Pki(ark_key, ask_key, vcek_key, ark, ask, vcek)


def der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


def build_report(**overrides) -> AttestationReport:
    """An unsigned Milan report with plausible field values"""
    values = dict(
        version=3,
        guest_svn=1,
        policy=(1 << 17) | (1 << 16),
        family_id=b"\x00" * 16,
        image_id=b"\x00" * 16,
        vmpl=0,
        signature_algo=1,
        current_tcb=REPORTED_TCB,
        platform_info=0x1,
        signer_info=0,
        report_data=b"\x00" * 64,
        measurement=bytes(range(48)),
        host_data=b"\x00" * 32,
        id_key_digest=b"\x00" * 48,
        author_key_digest=b"\x00" * 48,
        report_id=b"\x11" * 32,
        report_id_ma=b"\xff" * 32,
        reported_tcb=REPORTED_TCB,
        cpuid_fam_id=0x19,
        cpuid_mod_id=0x01,
        cpuid_step=0x01,
        chip_id=CHIP_ID,
        committed_tcb=REPORTED_TCB,
        current_build=21,
        current_minor=55,
        current_major=1,
        committed_build=21,
        committed_minor=55,
        committed_major=1,
        launch_tcb=REPORTED_TCB,
        signature=b"\x00" * SIGNATURE_SIZE,
    )
    values.update(overrides)
    return AttestationReport(**values)


def sign_report(report: AttestationReport, key: ec.EllipticCurvePrivateKey) -> bytes:
    """Sign a report the way the firmware does and return the raw bytes"""
    signed_data = report.encode()[:SIGNATURE_OFFSET]
    r, s = decode_dss_signature(key.sign(signed_data, ec.ECDSA(hashes.SHA384())))
    signature = r.to_bytes(ECDSA_RS_SIZE, "little") + s.to_bytes(ECDSA_RS_SIZE, "little")
    return signed_data + signature.ljust(SIGNATURE_SIZE, b"\x00")


class SigningReportSource:
    """Report source producing reports signed by the test VCEK"""

    def __init__(self, pki: Pki, **overrides):
        self.pki = pki
        self.overrides = overrides
        self.calls = 0

    def get_report(self, report_data: bytes) -> bytes:
        self.calls += 1
        report = build_report(report_data=report_data.ljust(64, b"\x00"), **self.overrides)
        return sign_report(report, self.pki.vcek_key)


@pytest.fixture(scope="session")
def pki() -> Pki:
    return build_pki()


@pytest.fixture
def signed_report(pki) -> bytes:
    return sign_report(build_report(), pki.vcek_key)


@pytest.fixture
def anchor_dir(tmp_path, pki):
    """A cache directory provisioned with ask.crt and ark.crt"""
    (tmp_path / "ask.crt").write_bytes(der(pki.ask))
    (tmp_path / "ark.crt").write_bytes(der(pki.ark))
    return tmp_path


@pytest.fixture
def kds_response():
    """Build a fake requests.Response for a given body"""
    def _make(content: bytes, status_code: int = 200, error: Optional[Exception] = None):
        response = MagicMock()
        response.content = content
        response.status_code = status_code
        if error is not None:
            response.raise_for_status.side_effect = error
        elif status_code >= 400:
            response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Error")
        return response
    return _make
