"""
Policy assertions over SEV-SNP attestation report fields.

A policy document is a JSON array of named assertions::

    [
        {"name": "no-debug", "field": "policy", "operator": "bit_clear", "value": 19},
        {"name": "measurement", "field": "measurement", "operator": "eq", "value": "2ded..."},
        {"name": "min-tcb", "field": "reported_tcb", "operator": "ge",
         "value": {"bl_spl": 7, "tee_spl": 0, "snp_spl": 14, "ucode_spl": 72}},
        {"name": "min-snp-spl", "field": "reported_tcb.snp_spl", "operator": "ge", "value": 14}
    ]

Integer fields accept ``eq ne lt le gt ge bit_set bit_clear``; byte fields
accept ``eq ne`` with a hex string of exactly the field's size; TCB fields
accept ``eq ne ge le``, where ``ge``/``le`` compare component-wise.
"""

import json
import operator
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Union

from .abi_sevsnp import AttestationReport, BYTE_FIELDS, TCBParts
from .types import PolicyParseError, PolicyResult


class FieldKind(str, Enum):
    INTEGER = "integer"
    BYTES = "bytes"
    TCB = "tcb"


TCB_FIELDS = ("current_tcb", "reported_tcb", "committed_tcb", "launch_tcb")

INTEGER_FIELDS = (
    "version",
    "guest_svn",
    "policy",
    "vmpl",
    "signature_algo",
    "platform_info",
    "signer_info",
    "cpuid_fam_id",
    "cpuid_mod_id",
    "cpuid_step",
    "current_build",
    "current_minor",
    "current_major",
    "committed_build",
    "committed_minor",
    "committed_major",
)

FIELDS: Dict[str, FieldKind] = {}
FIELDS.update({name: FieldKind.INTEGER for name in INTEGER_FIELDS})
FIELDS.update({
    f"{tcb}.{component}": FieldKind.INTEGER
    for tcb in TCB_FIELDS
    for component in TCBParts.COMPONENTS
})
FIELDS.update({name: FieldKind.BYTES for name in BYTE_FIELDS if name != "signature"})
FIELDS.update({name: FieldKind.TCB for name in TCB_FIELDS})

_ORDERED = {
    "eq": operator.eq,
    "ne": operator.ne,
    "lt": operator.lt,
    "le": operator.le,
    "gt": operator.gt,
    "ge": operator.ge,
}

_BITWISE = {
    "bit_set": lambda actual, bit: bool(actual & (1 << bit)),
    "bit_clear": lambda actual, bit: not actual & (1 << bit),
}

_TCB_OPERATORS = {
    "eq": operator.eq,
    "ne": operator.ne,
    "ge": lambda actual, expected: actual.meets_minimum(expected),
    "le": lambda actual, expected: expected.meets_minimum(actual),
}

OPERATORS = {
    FieldKind.INTEGER: {**_ORDERED, **_BITWISE},
    FieldKind.BYTES: {"eq": operator.eq, "ne": operator.ne},
    FieldKind.TCB: _TCB_OPERATORS,
}

_ASSERTION_KEYS = {"name", "field", "operator", "value"}


@dataclass(frozen=True)
class Assertion:
    """A single named predicate over one report field"""
    name: str
    field: str
    operator: str
    value: Union[int, bytes, TCBParts]

    def check(self, report: AttestationReport) -> bool:
        actual = _field_value(report, self.field)
        compare: Callable[[Any, Any], bool] = OPERATORS[FIELDS[self.field]][self.operator]
        return bool(compare(actual, self.value))


@dataclass(frozen=True)
class Policy:
    """An ordered set of assertions"""
    assertions: List[Assertion]


def parse_policy(document: Union[bytes, str]) -> Policy:
    """
    Parse a JSON policy document.

    Raises:
        PolicyParseError: If the document is not a well-formed policy
    """
    if isinstance(document, bytes):
        try:
            document = document.decode("utf-8")
        except UnicodeDecodeError as e:
            raise PolicyParseError(f"policy document is not valid UTF-8: {e}") from e

    try:
        entries = json.loads(document)
    except (ValueError, RecursionError) as e:
        # oversized integers and excessive nesting are not JSONDecodeErrors
        raise PolicyParseError(f"policy document is not valid JSON: {e}") from e

    if not isinstance(entries, list):
        raise PolicyParseError("policy document must be a JSON array of assertions")

    assertions = []
    seen = set()
    for index, entry in enumerate(entries):
        assertion = _parse_assertion(index, entry)
        if assertion.name in seen:
            raise PolicyParseError(f"duplicate assertion name {assertion.name!r}")
        seen.add(assertion.name)
        assertions.append(assertion)

    return Policy(assertions=assertions)


def evaluate_policy(policy: Policy, report: AttestationReport) -> PolicyResult:
    """Evaluate every assertion and collect the names of all failing ones"""
    failed = [assertion.name for assertion in policy.assertions if not assertion.check(report)]
    return PolicyResult(ok=not failed, failed=failed)


## HELPER FUNCTIONS

def _field_value(report: AttestationReport, name: str) -> Any:
    value = report
    for part in name.split("."):
        value = getattr(value, part)
    return value

def _parse_assertion(index: int, entry: Any) -> Assertion:
    if not isinstance(entry, dict):
        raise PolicyParseError(f"assertion #{index} must be an object")

    keys = set(entry)
    if keys != _ASSERTION_KEYS:
        missing = sorted(_ASSERTION_KEYS - keys)
        extra = sorted(keys - _ASSERTION_KEYS)
        raise PolicyParseError(f"assertion #{index} has missing keys {missing} or unknown keys {extra}")

    name = entry["name"]
    if not isinstance(name, str) or not name:
        raise PolicyParseError(f"assertion #{index}: name must be a non-empty string")

    field_name = entry["field"]
    if field_name not in FIELDS:
        raise PolicyParseError(f"assertion {name!r}: unknown field {field_name!r}")
    kind = FIELDS[field_name]

    op = entry["operator"]
    if op not in OPERATORS[kind]:
        raise PolicyParseError(
            f"assertion {name!r}: operator {op!r} is not valid for {kind.value} field {field_name!r}"
        )

    if kind == FieldKind.BYTES:
        value = _parse_bytes(name, entry["value"], BYTE_FIELDS[field_name])
    elif kind == FieldKind.TCB:
        value = _parse_tcb(name, entry["value"])
    elif op in _BITWISE:
        value = _parse_int(name, entry["value"])
        if not 0 <= value < 64:
            raise PolicyParseError(f"assertion {name!r}: bit index {value} out of range 0..63")
    else:
        value = _parse_int(name, entry["value"])

    return Assertion(name=name, field=field_name, operator=op, value=value)

def _parse_int(name: str, raw: Any) -> int:
    # bool is a subclass of int but never a meaningful report value
    if isinstance(raw, bool):
        raise PolicyParseError(f"assertion {name!r}: expected an integer, got a boolean")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.lower().startswith("0x"):
        try:
            return int(raw, 16)
        except ValueError:
            pass
    raise PolicyParseError(f"assertion {name!r}: expected an integer or 0x-prefixed hex string, got {raw!r}")

def _parse_bytes(name: str, raw: Any, size: int) -> bytes:
    if not isinstance(raw, str):
        raise PolicyParseError(f"assertion {name!r}: expected a hex string")
    try:
        value = bytes.fromhex(raw)
    except ValueError as e:
        raise PolicyParseError(f"assertion {name!r}: invalid hex string: {e}") from e
    if len(value) != size:
        raise PolicyParseError(f"assertion {name!r}: expected {size} bytes, got {len(value)}")
    return value

def _parse_tcb(name: str, raw: Any) -> TCBParts:
    if isinstance(raw, dict):
        if set(raw) != set(TCBParts.COMPONENTS):
            raise PolicyParseError(
                f"assertion {name!r}: TCB value must have exactly the keys {list(TCBParts.COMPONENTS)}"
            )
        components = {key: _parse_int(name, raw[key]) for key in TCBParts.COMPONENTS}
        for key, value in components.items():
            if not 0 <= value <= 0xff:
                raise PolicyParseError(f"assertion {name!r}: TCB component {key} out of range: {value}")
        return TCBParts(**components)

    value = _parse_int(name, raw)
    if not 0 <= value < (1 << 64):
        raise PolicyParseError(f"assertion {name!r}: TCB value out of range")
    return TCBParts.from_int(value)
