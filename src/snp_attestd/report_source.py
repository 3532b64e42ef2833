"""
Sources of live attestation reports.

The service only depends on the ``ReportSource`` protocol. The Linux
configfs-tsm interface is provided as the concrete source for SEV-SNP guests.
"""

import logging
import os
import tempfile
from typing import Protocol

from .attestation.abi_sevsnp import REPORT_DATA_SIZE
from .attestation.types import ReportSourceError

logger = logging.getLogger(__name__)


class ReportSource(Protocol):
    def get_report(self, report_data: bytes) -> bytes:
        """Return a raw, signed attestation report binding *report_data* (at most 64 bytes)."""
        ...


class ConfigfsTsmReportSource:
    """Report source backed by /sys/kernel/config/tsm/report.

    Each request creates a fresh entry, writes the report data to ``inblob``,
    reads the signed report from ``outblob`` and removes the entry again.
    The interface is not reentrant per entry, so callers serialize access.
    """

    PROVIDER = "sev_guest"

    def __init__(self, tsm_report_dir: str):
        self.tsm_report_dir = tsm_report_dir

    def get_report(self, report_data: bytes) -> bytes:
        if len(report_data) > REPORT_DATA_SIZE:
            raise ReportSourceError(f"expected at most {REPORT_DATA_SIZE} bytes of report data, got {len(report_data)}")
        inblob = report_data.ljust(REPORT_DATA_SIZE, b"\x00")

        try:
            entry = tempfile.mkdtemp(prefix="snp-attestd-", dir=self.tsm_report_dir)
        except OSError as e:
            raise ReportSourceError(f"could not create a report entry in {self.tsm_report_dir}: {e}") from e

        try:
            provider = _read(entry, "provider").decode("ascii", "replace").strip()
            if provider != self.PROVIDER:
                raise ReportSourceError(f"unexpected report provider {provider!r}, expected {self.PROVIDER!r}")

            _write(entry, "inblob", inblob)
            generation = _read(entry, "generation").strip()
            report = _read(entry, "outblob")
            # A concurrent writer to the same entry bumps the generation
            if _read(entry, "generation").strip() != generation:
                raise ReportSourceError("report entry was modified while reading the report")
        except OSError as e:
            raise ReportSourceError(f"error retrieving report from {entry}: {e}") from e
        finally:
            try:
                os.rmdir(entry)
            except OSError as e:
                logger.warning("Could not remove report entry %s: %s", entry, e)

        logger.debug("Got a %d byte report from %s", len(report), entry)
        return report


def _read(entry: str, name: str) -> bytes:
    with open(os.path.join(entry, name), "rb") as fh:
        return fh.read()

def _write(entry: str, name: str, data: bytes) -> None:
    with open(os.path.join(entry, name), "wb") as fh:
        fh.write(data)
