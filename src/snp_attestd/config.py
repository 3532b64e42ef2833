import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

import platformdirs

from .attestation.cert_cache import DEFAULT_FETCH_TIMEOUT, DEFAULT_KDS_BASE_URL

DEFAULT_TSM_REPORT_DIR = "/sys/kernel/config/tsm/report"
DEFAULT_PRODUCT = "Milan"

ENV_PREFIX = "SNP_ATTESTD_"


def default_cache_dir() -> str:
    return platformdirs.user_cache_dir("snp-attestd", "snp-attestd")


@dataclass
class ServiceConfig:
    """
    Configuration of an AttestationService.

    The cache directory holds the pre-provisioned ``ask.crt``/``ark.crt`` and
    the VCEKs fetched from the KDS.
    """
    cache_dir: str = field(default_factory=default_cache_dir)
    kds_base_url: str = DEFAULT_KDS_BASE_URL
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT  # seconds, per KDS request
    verify_only: bool = False
    default_product: str = DEFAULT_PRODUCT  # used when the report's CPUID is unknown
    tsm_report_dir: str = DEFAULT_TSM_REPORT_DIR

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServiceConfig":
        """Build a config from SNP_ATTESTD_* variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        config = cls()
        if f"{ENV_PREFIX}CACHE_DIR" in env:
            config.cache_dir = env[f"{ENV_PREFIX}CACHE_DIR"]
        if f"{ENV_PREFIX}KDS_URL" in env:
            config.kds_base_url = env[f"{ENV_PREFIX}KDS_URL"]
        if f"{ENV_PREFIX}FETCH_TIMEOUT" in env:
            try:
                config.fetch_timeout = float(env[f"{ENV_PREFIX}FETCH_TIMEOUT"])
            except ValueError as e:
                raise ValueError(f"{ENV_PREFIX}FETCH_TIMEOUT must be a number: {e}") from e
        if f"{ENV_PREFIX}VERIFY_ONLY" in env:
            config.verify_only = env[f"{ENV_PREFIX}VERIFY_ONLY"].lower() in ("1", "true", "yes", "on")
        if f"{ENV_PREFIX}PRODUCT" in env:
            config.default_product = env[f"{ENV_PREFIX}PRODUCT"]
        if f"{ENV_PREFIX}TSM_DIR" in env:
            config.tsm_report_dir = env[f"{ENV_PREFIX}TSM_DIR"]
        return config
