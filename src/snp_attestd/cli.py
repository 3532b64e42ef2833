"""
Command line front end for the attestation service.

Exit codes of ``verify``: 0 verified, 1 verification failed, 2 client error,
3 internal error.
"""

import argparse
import logging
import sys
from typing import List, Optional

from .attestation.abi_sevsnp import AttestationReport
from .attestation.cert_cache import KdsClient
from .attestation.trust_anchors import TrustAnchorStore
from .attestation.types import AttestationError, ClientError, FormatError, InternalError
from .config import ServiceConfig
from .service import AttestationService

EXIT_OK = 0
EXIT_VERIFICATION_FAILED = 1
EXIT_CLIENT_ERROR = 2
EXIT_INTERNAL_ERROR = 3

logger = logging.getLogger("snp_attestd")


def build_parser() -> argparse.ArgumentParser:
    defaults = ServiceConfig.from_env()

    parser = argparse.ArgumentParser(prog="snp-attestd", description="AMD SEV-SNP attestation report issuer and verifier")
    parser.add_argument("--cache-dir", default=defaults.cache_dir, help="Directory holding ask.crt, ark.crt and cached VCEKs")
    parser.add_argument("--kds-url", default=defaults.kds_base_url, help="Base URL of the AMD KDS VCEK endpoint")
    parser.add_argument("--timeout", type=float, default=defaults.fetch_timeout, help="KDS request timeout in seconds")
    parser.add_argument("--product", default=defaults.default_product, help="Product name used when the report does not identify the CPU")
    parser.add_argument("--tsm-dir", default=defaults.tsm_report_dir, help="configfs-tsm report directory")
    parser.add_argument("--verify-only", action="store_true", default=defaults.verify_only, help="Refuse to issue reports")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    issue = sub.add_parser("issue", help="Obtain a report from the local SEV-SNP firmware")
    issue.add_argument("--report-data", default="", help="Hex encoded report data (at most 64 bytes)")
    issue.add_argument("--include-cert", action="store_true", help="Also fetch the VCEK certificate")
    issue.add_argument("--out", required=True, help="Path to write the report to")
    issue.add_argument("--cert-out", help="Path to write the VCEK certificate to")

    verify = sub.add_parser("verify", help="Verify a report against the trust anchors and a policy")
    verify.add_argument("--report", required=True, help="Path to attestation report")
    verify.add_argument("--vcek", help="Path to VCEK certificate (fetched from the KDS if omitted)")
    verify.add_argument("--policy", help="Path to a JSON policy document (empty policy if omitted)")

    show = sub.add_parser("show", help="Print a decoded report")
    show.add_argument("--report", required=True, help="Path to attestation report")

    sub.add_parser("fetch-anchors", help="Download ask.crt and ark.crt from the KDS into the cache dir")

    return parser


def config_from_args(args: argparse.Namespace) -> ServiceConfig:
    return ServiceConfig(
        cache_dir=args.cache_dir,
        kds_base_url=args.kds_url,
        fetch_timeout=args.timeout,
        verify_only=args.verify_only,
        default_product=args.product,
        tsm_report_dir=args.tsm_dir,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    config = config_from_args(args)
    commands = {
        "issue": _issue,
        "verify": _verify,
        "show": _show,
        "fetch-anchors": _fetch_anchors,
    }

    try:
        return commands[args.command](config, args)
    except ClientError as e:
        logger.error("%s", e)
        return EXIT_CLIENT_ERROR
    except InternalError as e:
        logger.error("%s", e)
        return EXIT_INTERNAL_ERROR


def _issue(config: ServiceConfig, args: argparse.Namespace) -> int:
    try:
        report_data = bytes.fromhex(args.report_data)
    except ValueError as e:
        raise ClientError(f"--report-data is not valid hex: {e}") from e

    service = AttestationService(config)
    issued = service.issue_report(report_data, include_certificate=args.include_cert)

    with open(args.out, "wb") as fh:
        fh.write(issued.report)
    logger.info("Wrote report to %s", args.out)

    if issued.certificate is not None:
        if args.cert_out:
            with open(args.cert_out, "wb") as fh:
                fh.write(issued.certificate)
            logger.info("Wrote VCEK certificate to %s", args.cert_out)
        else:
            logger.warning("VCEK certificate fetched but no --cert-out given; discarding it")
    return EXIT_OK


def _verify(config: ServiceConfig, args: argparse.Namespace) -> int:
    report = _read_file(args.report)
    vcek = _read_file(args.vcek) if args.vcek else None
    policy = _read_file(args.policy) if args.policy else b"[]"

    result = AttestationService(config).verify_report(report, vcek, policy)
    if result.ok:
        print("Attestation verification successful")
        return EXIT_OK

    print("Attestation verification failed")
    for reason in result.reasons:
        print(f"  - {reason}")
    return EXIT_VERIFICATION_FAILED


def _show(config: ServiceConfig, args: argparse.Namespace) -> int:
    try:
        report = AttestationReport.decode(_read_file(args.report))
    except FormatError as e:
        raise ClientError(f"could not decode the attestation report: {e}") from e
    report.print_report()
    return EXIT_OK


def _fetch_anchors(config: ServiceConfig, args: argparse.Namespace) -> int:
    kds = KdsClient(config.kds_base_url, timeout=config.fetch_timeout)
    try:
        TrustAnchorStore(config.cache_dir).provision(kds, config.default_product)
    except (AttestationError, OSError) as e:
        logger.error("Could not provision the trust anchors: %s", e)
        return EXIT_INTERNAL_ERROR
    return EXIT_OK


def _read_file(path: str) -> bytes:
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except OSError as e:
        raise ClientError(f"could not read {path}: {e}") from e


if __name__ == "__main__":
    sys.exit(main())
