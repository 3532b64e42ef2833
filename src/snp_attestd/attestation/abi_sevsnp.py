import struct
from dataclasses import dataclass, fields
from enum import IntEnum
from typing import List, Tuple

from .types import FormatError

REPORT_SIZE = 0x4A0  # 1184 bytes
SIGNATURE_OFFSET = 0x2A0
SIGNATURE_SIZE = REPORT_SIZE - SIGNATURE_OFFSET
ECDSA_RS_SIZE = 72
REPORT_DATA_SIZE = 64
CHIP_ID_SIZE = 64

SIGNATURE_ALGO_ECDSA_P384_SHA384 = 1

ZEN3ZEN4_FAMILY = 0x19
MILAN_MODEL     = 0 | 1
GENOA_MODEL     = (1 << 4) | 1

# Wire layout, little-endian. Pad bytes ("x") are the reserved ranges, which
# are checked separately since struct skips them on unpack.
_REPORT_LAYOUT = struct.Struct(
    "<"
    "I"      # 0x000 version
    "I"      # 0x004 guest_svn
    "Q"      # 0x008 policy
    "16s"    # 0x010 family_id
    "16s"    # 0x020 image_id
    "I"      # 0x030 vmpl
    "I"      # 0x034 signature_algo
    "Q"      # 0x038 current_tcb
    "Q"      # 0x040 platform_info
    "I"      # 0x048 signer_info
    "4x"     # 0x04C
    "64s"    # 0x050 report_data
    "48s"    # 0x090 measurement
    "32s"    # 0x0C0 host_data
    "48s"    # 0x0E0 id_key_digest
    "48s"    # 0x110 author_key_digest
    "32s"    # 0x140 report_id
    "32s"    # 0x160 report_id_ma
    "Q"      # 0x180 reported_tcb
    "BBB"    # 0x188 cpuid_fam_id, cpuid_mod_id, cpuid_step
    "21x"    # 0x18B
    "64s"    # 0x1A0 chip_id
    "Q"      # 0x1E0 committed_tcb
    "BBBx"   # 0x1E8 current_build, current_minor, current_major
    "BBBx"   # 0x1EC committed_build, committed_minor, committed_major
    "Q"      # 0x1F0 launch_tcb
    "168x"   # 0x1F8
    "512s"   # 0x2A0 signature
)

_RESERVED_RANGES = (
    (0x4C, 0x50),
    (0x18B, 0x1A0),
    (0x1EB, 0x1EC),
    (0x1EF, 0x1F0),
    (0x1F8, SIGNATURE_OFFSET),
)

_TCB_FIELDS = ("current_tcb", "reported_tcb", "committed_tcb", "launch_tcb")

class ReportSigner(IntEnum):
    VcekReportSigner = 0
    # VlekReportSigner is the SIGNING_KEY value for if the VLEK signed the attestation report.
    VlekReportSigner = 1
    endorseReserved2 = 2
    endorseReserved3 = 3
    endorseReserved4 = 4
    endorseReserved5 = 5
    endorseReserved6 = 6
    # NoneReportSigner is the SIGNING_KEY value for if the attestation report is not signed.
    NoneReportSigner = 7

@dataclass(frozen=True)
class SignerInfo:
    """Information about the signing circumstances for the attestation report."""
    # Kind of key by which a report was signed.
    signing_key: ReportSigner
    # True if the host enabled CHIP_ID masking, which zeroes the report's CHIP_ID.
    mask_chip_key: bool
    # True if the VM is launched with an IDBLOCK that includes an author key.
    author_key_en: bool

    @classmethod
    def from_int(cls, value: int) -> "SignerInfo":
        return cls(
            signing_key=ReportSigner((value >> 2) & 7),
            mask_chip_key=(value & 2) != 0,
            author_key_en=(value & 1) != 0,
        )

@dataclass(frozen=True)
class TCBParts:
    """Represents the decomposed parts of a TCB version"""
    ucode_spl: int
    snp_spl: int
    tee_spl: int
    bl_spl: int

    COMPONENTS = ("bl_spl", "tee_spl", "snp_spl", "ucode_spl")

    def __str__(self) -> str:
        """Return a human-friendly string with all component SPL values."""
        # Print fields in order starting with the least-significant component (bl_spl)
        return (
            "TCBParts("
            f"bl_spl=0x{self.bl_spl:02x}, "
            f"tee_spl=0x{self.tee_spl:02x}, "
            f"snp_spl=0x{self.snp_spl:02x}, "
            f"ucode_spl=0x{self.ucode_spl:02x})"
        )

    @classmethod
    def from_int(cls, tcb: int) -> "TCBParts":
        """Build a TCBParts instance from a 64-bit packed TCB value."""
        return cls(
            ucode_spl=((tcb >> 56) & 0xff),
            snp_spl=((tcb >> 48) & 0xff),
            tee_spl=((tcb >> 8) & 0xff),
            bl_spl=((tcb >> 0) & 0xff),
        )

    def to_int(self) -> int:
        """Pack the components back into the 64-bit TCB value."""
        for name in self.COMPONENTS:
            value = getattr(self, name)
            if not 0 <= value <= 0xff:
                raise FormatError(f"TCB component {name} out of range: {value}")
        return (
            (self.ucode_spl << 56) |
            (self.snp_spl << 48) |
            (self.tee_spl << 8) |
            self.bl_spl
        )

    def to_bytes(self) -> bytes:
        """The TCB as it appears on the wire (8 bytes, little-endian)."""
        return self.to_int().to_bytes(8, byteorder='little')

    def meets_minimum(self, minimum: "TCBParts") -> bool:
        """Check if this TCB meets minimum requirements (component-wise)."""
        return (
            self.bl_spl >= minimum.bl_spl and
            self.tee_spl >= minimum.tee_spl and
            self.snp_spl >= minimum.snp_spl and
            self.ucode_spl >= minimum.ucode_spl
        )

@dataclass(frozen=True)
class SnpPlatformInfo:
    """Decoded view of the 64-bit PLATFORM_INFO field."""

    smt_enabled: bool
    tsme_enabled: bool
    ecc_enabled: bool
    rapl_disabled: bool
    ciphertext_hiding_dram_enabled: bool
    alias_check_complete: bool
    tio_enabled: bool

    @classmethod
    def from_int(cls, value: int) -> "SnpPlatformInfo":
        return cls(
            smt_enabled=bool(value & (1 << 0)),
            tsme_enabled=bool(value & (1 << 1)),
            ecc_enabled=bool(value & (1 << 2)),
            rapl_disabled=bool(value & (1 << 3)),
            ciphertext_hiding_dram_enabled=bool(value & (1 << 4)),
            alias_check_complete=bool(value & (1 << 5)),
            tio_enabled=bool(value & (1 << 7))
        )


@dataclass(frozen=True)
class SnpPolicy:
    """Decoded view of the 64-bit POLICY field (bits 0-25)."""

    abi_minor: int
    abi_major: int
    smt: bool
    migrate_ma: bool
    debug: bool
    single_socket: bool
    cxl_allowed: bool
    mem_aes256_xts: bool
    rapl_dis: bool
    ciphertext_hiding_dram: bool
    page_swap_disabled: bool

    @classmethod
    def from_int(cls, value: int) -> "SnpPolicy":
        """Parse the guest policy bit-field following the AMD SEV-SNP ABI."""
        return cls(
            abi_minor=value & 0xFF,
            abi_major=(value >> 8) & 0xFF,
            smt=bool(value & (1 << 16)),
            migrate_ma=bool(value & (1 << 18)),
            debug=bool(value & (1 << 19)),
            single_socket=bool(value & (1 << 20)),
            cxl_allowed=bool(value & (1 << 21)),
            mem_aes256_xts=bool(value & (1 << 22)),
            rapl_dis=bool(value & (1 << 23)),
            ciphertext_hiding_dram=bool(value & (1 << 24)),
            page_swap_disabled=bool(value & (1 << 25)),
        )

# Byte fields and their fixed sizes. Anything else in the report is an integer
# or a TCB.
BYTE_FIELDS = {
    "family_id": 16,
    "image_id": 16,
    "report_data": REPORT_DATA_SIZE,
    "measurement": 48,
    "host_data": 32,
    "id_key_digest": 48,
    "author_key_digest": 48,
    "report_id": 32,
    "report_id_ma": 32,
    "chip_id": CHIP_ID_SIZE,
    "signature": SIGNATURE_SIZE,
}

@dataclass(frozen=True)
class AttestationReport:
    """SEV-SNP attestation report. Fields are declared in wire order."""
    version: int  # 2 for revision 1.55, 3 for revision 1.56, 5 for revision 1.58
    guest_svn: int
    policy: int
    family_id: bytes
    image_id: bytes
    vmpl: int
    signature_algo: int
    current_tcb: TCBParts
    platform_info: int
    signer_info: int  # AuthorKeyEn, MaskChipKey, SigningKey
    report_data: bytes
    measurement: bytes
    host_data: bytes
    id_key_digest: bytes
    author_key_digest: bytes
    report_id: bytes
    report_id_ma: bytes
    reported_tcb: TCBParts
    cpuid_fam_id: int
    cpuid_mod_id: int
    cpuid_step: int
    chip_id: bytes
    committed_tcb: TCBParts
    current_build: int
    current_minor: int
    current_major: int
    committed_build: int
    committed_minor: int
    committed_major: int
    launch_tcb: TCBParts
    signature: bytes  # r || s, little-endian, zero padded to 512 bytes

    def __post_init__(self):
        for name, size in BYTE_FIELDS.items():
            value = getattr(self, name)
            if not isinstance(value, bytes) or len(value) != size:
                raise FormatError(f"{name} must be {size} bytes")
        for name in _TCB_FIELDS:
            if not isinstance(getattr(self, name), TCBParts):
                raise FormatError(f"{name} must be a TCBParts")

    @classmethod
    def decode(cls, data: bytes) -> "AttestationReport":
        """
        Parse an attestation report from raw bytes in SEV SNP ABI format.

        Args:
            data: Raw bytes of the attestation report. Bytes past REPORT_SIZE
                are ignored.
        Returns:
            AttestationReport with every field populated
        Raises:
            FormatError: If the buffer is short or a reserved range is set
        """
        if len(data) < REPORT_SIZE:
            raise FormatError(f"Array size is 0x{len(data):x}, an SEV-SNP attestation report size is 0x{REPORT_SIZE:x}")
        data = bytes(data[:REPORT_SIZE])

        for lo, hi in _RESERVED_RANGES:
            mbz(data, lo, hi)

        values = dict(zip((f.name for f in fields(cls)), _REPORT_LAYOUT.unpack(data)))

        if values["version"] < 2:
            raise FormatError(f"Unknown report version {values['version']}")

        for name in _TCB_FIELDS:
            mbz64(values[name], name, 47, 16)
            values[name] = TCBParts.from_int(values[name])

        mbz64(values["signer_info"], "signer_info", 31, 5)

        return cls(**values)

    def encode(self) -> bytes:
        """Serialize the report; the exact inverse of decode."""
        values = []
        for f in fields(self):
            value = getattr(self, f.name)
            values.append(value.to_int() if isinstance(value, TCBParts) else value)
        try:
            return _REPORT_LAYOUT.pack(*values)
        except struct.error as e:
            raise FormatError(f"Report field out of range: {e}") from e

    @property
    def signed_data(self) -> bytes:
        return self.encode()[:SIGNATURE_OFFSET]

    @property
    def policy_parsed(self) -> SnpPolicy:
        return SnpPolicy.from_int(self.policy)

    @property
    def platform_info_parsed(self) -> SnpPlatformInfo:
        return SnpPlatformInfo.from_int(self.platform_info)

    @property
    def signer_info_parsed(self) -> SignerInfo:
        return SignerInfo.from_int(self.signer_info)

    def get_fms(self):
        if self.version == 2:
            # Version 2 reports predate the CPUID fields
            return ZEN3ZEN4_FAMILY, GENOA_MODEL, 0x01
        return self.cpuid_fam_id, self.cpuid_mod_id, self.cpuid_step

    @property
    def product_name(self) -> str:
        family, model, _ = self.get_fms()
        if family == ZEN3ZEN4_FAMILY:
            if model == MILAN_MODEL:
                return "Milan"
            elif model == GENOA_MODEL:
                return "Genoa"
        return "Unknown"

    def describe(self) -> List[Tuple[str, object]]:
        """(label, value) rows for a human-readable dump, in wire order."""
        signer = self.signer_info_parsed
        family, model, stepping = self.get_fms()
        return [
            ("Version", self.version),
            ("Guest SVN", self.guest_svn),
            ("Policy", f"0x{self.policy:x} {self.policy_parsed}"),
            ("Family ID", self.family_id.hex()),
            ("Image ID", self.image_id.hex()),
            ("VMPL", self.vmpl),
            ("Signature Algorithm", self.signature_algo),
            ("Current TCB", self.current_tcb),
            ("Platform Info", f"0x{self.platform_info:x} {self.platform_info_parsed}"),
            ("Signer Info", f"0x{self.signer_info:x} (signing key {signer.signing_key.name}, "
                            f"mask chip key {signer.mask_chip_key}, author key {signer.author_key_en})"),
            ("Report Data", self.report_data.hex()),
            ("Measurement", self.measurement.hex()),
            ("Host Data", self.host_data.hex()),
            ("ID Key Digest", self.id_key_digest.hex()),
            ("Author Key Digest", self.author_key_digest.hex()),
            ("Report ID", self.report_id.hex()),
            ("Report ID MA", self.report_id_ma.hex()),
            ("Reported TCB", self.reported_tcb),
            ("CPU", f"family 0x{family:02x}, model 0x{model:02x}, stepping 0x{stepping:02x}"),
            ("Product Name", self.product_name),
            ("Chip ID", self.chip_id.hex()),
            ("Committed TCB", self.committed_tcb),
            ("Current Firmware", f"{self.current_major}.{self.current_minor}.{self.current_build}"),
            ("Committed Firmware", f"{self.committed_major}.{self.committed_minor}.{self.committed_build}"),
            ("Launch TCB", self.launch_tcb),
            ("Signature", self.signature[:2 * ECDSA_RS_SIZE].hex()),
        ]

    def print_report(self):
        print("=== SEV-SNP Attestation Report ===")
        for label, value in self.describe():
            print(f"{label}: {value}")

## HELPER FUNCTIONS

def mbz(data: bytes, lo: int, hi: int) -> None:
    """Raise FormatError unless data[lo:hi] is all zero bytes."""
    if any(data[lo:hi]):
        raise FormatError(f"mbz range [0x{lo:x}:0x{hi:x}] not all zero: {data[lo:hi].hex()}")

def mbz64(value: int, name: str, hi: int, lo: int) -> None:
    """Raise FormatError unless bits lo..hi (inclusive) of value are zero."""
    if (value >> lo) & ((1 << (hi - lo + 1)) - 1):
        raise FormatError(f"mbz range {name}[0x{lo:x}:0x{hi:x}] not all zero: {hex(value)}")
