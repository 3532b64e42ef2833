"""
VCEK certificate cache with fetch-on-miss from the AMD Key Distribution Service.

Each VCEK is identified by the chip id and reported TCB of the platform; both
values are found in the attestation report. Certificates are stored at
``{cache_dir}/{SHA-1(chip_id || reported_tcb)}.crt``.
"""

import binascii
import hashlib
import logging
import os
import tempfile
from typing import Optional

import requests

from .abi_sevsnp import TCBParts
from .types import CacheReadError, CertificateFetchError

logger = logging.getLogger(__name__)

DEFAULT_KDS_BASE_URL = "https://kdsintf.amd.com/vcek/v1"
DEFAULT_FETCH_TIMEOUT = 10.0


class KdsClient:
    """Minimal client for the AMD KDS VCEK endpoints"""

    def __init__(self, base_url: str = DEFAULT_KDS_BASE_URL, timeout: float = DEFAULT_FETCH_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def vcek_url(self, product: str, chip_id: bytes, tcb: TCBParts) -> str:
        """Generate the VCEK certificate URL based on the product name, chip ID, and reported TCB"""
        chip_id_hex = binascii.hexlify(chip_id).decode('ascii')
        return (
            f"{self.base_url}/{product}/{chip_id_hex}"
            f"?blSPL={tcb.bl_spl}&teeSPL={tcb.tee_spl}&snpSPL={tcb.snp_spl}&ucodeSPL={tcb.ucode_spl}"
        )

    def cert_chain_url(self, product: str) -> str:
        return f"{self.base_url}/{product}/cert_chain"

    def fetch_vcek(self, product: str, chip_id: bytes, tcb: TCBParts) -> bytes:
        """Fetch the DER-encoded VCEK for the given chip and TCB"""
        return self._get(self.vcek_url(product, chip_id, tcb))

    def fetch_cert_chain(self, product: str) -> bytes:
        """Fetch the PEM-encoded ASK and ARK for the given product"""
        return self._get(self.cert_chain_url(product))

    def _get(self, url: str) -> bytes:
        logger.debug("Fetching %s", url)
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise CertificateFetchError(f"Failed to fetch {url}: {e}") from e
        if not response.content:
            raise CertificateFetchError(f"Empty response from {url}")
        return response.content


class CertificateCache:
    """Content-addressed on-disk VCEK cache.

    Entries are write-once per key: the certificate for a (chip_id, tcb) pair
    never changes, so concurrent misses may both fetch and both write.
    """

    def __init__(self, cache_dir: str, kds: KdsClient, default_product: str = "Milan"):
        self.cache_dir = cache_dir
        self.kds = kds
        self.default_product = default_product

    @staticmethod
    def cache_key(chip_id: bytes, reported_tcb: TCBParts) -> str:
        """SHA-1 over chip_id followed by the TCB as it appears on the wire"""
        digest = hashlib.sha1()
        digest.update(chip_id)
        digest.update(reported_tcb.to_bytes())
        return digest.hexdigest()

    def cache_path(self, chip_id: bytes, reported_tcb: TCBParts) -> str:
        return os.path.join(self.cache_dir, f"{self.cache_key(chip_id, reported_tcb)}.crt")

    def get(self, chip_id: bytes, reported_tcb: TCBParts, product: Optional[str] = None) -> bytes:
        """
        Return the VCEK certificate bytes for a chip and TCB.

        Raises:
            CacheReadError: If a cached entry exists but cannot be read, or the
                cache directory cannot be created
            CertificateFetchError: If the entry is missing and the KDS fetch fails
        """
        path = self.cache_path(chip_id, reported_tcb)

        # 1. Try the on-disk cache
        if os.path.isfile(path):
            try:
                with open(path, "rb") as fh:
                    data = fh.read()
            except OSError as e:
                raise CacheReadError(f"Error reading VCEK certificate from {path}: {e}") from e
            logger.debug("Loaded VCEK from cache %s", path)
            return data

        # 2. Cache miss, fetch from the KDS endpoint
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
        except OSError as e:
            raise CacheReadError(f"VCEK cache dir {self.cache_dir} could not be created: {e}") from e

        logger.debug("Fetching VCEK certificate from AMD KDS")
        data = self.kds.fetch_vcek(product or self.default_product, chip_id, reported_tcb)

        # Persisting is best effort; the fetched certificate is still usable
        try:
            _write_atomic(path, data)
        except OSError as e:
            logger.warning("Could not save VCEK certificate to cache: %s", e)

        return data

    def evict(self, chip_id: bytes, reported_tcb: TCBParts) -> None:
        """Remove a cached entry, e.g. one that failed to parse"""
        path = self.cache_path(chip_id, reported_tcb)
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove cached VCEK %s: %s", path, e)


def _write_atomic(path: str, data: bytes) -> None:
    directory = os.path.dirname(path) or "."
    fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_path, path)
    except OSError:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise
