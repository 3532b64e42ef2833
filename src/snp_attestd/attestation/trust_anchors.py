"""
Pre-provisioned AMD trust anchors (ASK and ARK).

The service only reads ``{cache_dir}/ask.crt`` and ``{cache_dir}/ark.crt``.
Writing them is an operator step (see ``TrustAnchorStore.provision``).
"""

import logging
import os
import warnings
from typing import List, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.utils import CryptographyDeprecationWarning

from .cert_cache import KdsClient
from .types import TrustAnchorError

logger = logging.getLogger(__name__)

ASK_FILENAME = "ask.crt"
ARK_FILENAME = "ark.crt"

_PEM_END_MARKER = b'-----END CERTIFICATE-----'


class TrustAnchorStore:
    """Loads the ASK (intermediate) and ARK (root) certificates"""

    def __init__(self, cache_dir: str):
        self.cache_dir = cache_dir

    @property
    def ask_path(self) -> str:
        return os.path.join(self.cache_dir, ASK_FILENAME)

    @property
    def ark_path(self) -> str:
        return os.path.join(self.cache_dir, ARK_FILENAME)

    def load(self) -> Tuple[x509.Certificate, x509.Certificate]:
        """
        Load the trust anchors.

        Returns:
            (ask, ark)

        Raises:
            TrustAnchorError: If either file is missing or does not parse
        """
        ask = _load_anchor(self.ask_path, "ASK")
        ark = _load_anchor(self.ark_path, "ARK")
        return ask, ark

    def provision(self, kds: KdsClient, product: str) -> Tuple[x509.Certificate, x509.Certificate]:
        """Fetch the ASK/ARK chain for *product* from the KDS and store it"""
        certs = parse_pem_chain(kds.fetch_cert_chain(product))
        if len(certs) != 2:
            raise TrustAnchorError(f"Expected ASK and ARK in the KDS cert chain, got {len(certs)} certificates")
        ask, ark = certs

        os.makedirs(self.cache_dir, exist_ok=True)
        for cert, path in ((ask, self.ask_path), (ark, self.ark_path)):
            with open(path, "wb") as fh:
                fh.write(cert.public_bytes(serialization.Encoding.DER))
            logger.info("Wrote %s", path)
        return ask, ark


def load_certificate(data: bytes) -> x509.Certificate:
    """Parse a DER or PEM X.509 certificate"""
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    # AMD certificates may carry a non-positive serial number, which
    # cryptography 46+ warns about when parsing DER.
    with warnings.catch_warnings():
        warnings.filterwarnings(
            "ignore",
            message=r"Parsed a serial number which wasn't positive",
            category=CryptographyDeprecationWarning,
        )
        return x509.load_der_x509_certificate(data)


def parse_pem_chain(pem_data: bytes) -> List[x509.Certificate]:
    """
    Parse concatenated PEM certificates.

    Raises:
        TrustAnchorError: If parsing fails
    """
    certs = []
    remaining = pem_data

    while remaining:
        remaining = remaining.lstrip(b'\x00\n\r\t ')
        if not remaining:
            break

        try:
            certs.append(x509.load_pem_x509_certificate(remaining))
        except ValueError as e:
            raise TrustAnchorError(f"Failed to parse PEM certificate: {e}") from e

        end_pos = remaining.find(_PEM_END_MARKER)
        if end_pos == -1:
            break
        remaining = remaining[end_pos + len(_PEM_END_MARKER):]

    return certs


def _load_anchor(path: str, label: str) -> x509.Certificate:
    try:
        with open(path, "rb") as fh:
            data = fh.read()
    except OSError as e:
        raise TrustAnchorError(f"Could not read the {label} certificate at {path}: {e}") from e

    try:
        return load_certificate(data)
    except ValueError as e:
        raise TrustAnchorError(f"Could not decode the {label} certificate at {path}: {e}") from e
