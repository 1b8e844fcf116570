"""Record builders for the UKE claim file.

Every record is one line of comma separated fields whose first field names
the record type.  Lines are joined with CRLF and the whole file is encoded
with the legacy Japanese encoding configured for the clinic.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping, Optional, Sequence

from dentbill.drugs import format_number
from dentbill.time_utils import compact_date

LINE_SEPARATOR = "\r\n"
DAY_SLOTS = 31

INSURANCE_TYPE_CODES = {"国保": "3", "後期高齢": "7"}
DEFAULT_INSURANCE_TYPE_CODE = "1"

OUTCOME_CODES = {"cured": "1", "died": "2", "suspended": "3"}

_FULLWIDTH_OFFSET = 0xFEE0


@dataclass(frozen=True)
class ClinicInfo:
    clinic_code: str = "3101471"
    prefecture_code: str = "23"
    facility_code: str = "0117"
    name: str = ""
    phone: str = "0000-00-0000"

    @classmethod
    def from_row(cls, row: Optional[Mapping[str, Any]]) -> "ClinicInfo":
        if not row:
            return cls()
        defaults = cls()
        return cls(
            clinic_code=row.get("clinic_code") or defaults.clinic_code,
            prefecture_code=row.get("prefecture_code") or defaults.prefecture_code,
            facility_code=row.get("facility_code") or defaults.facility_code,
            name=row.get("name") or "",
            phone=row.get("phone") or defaults.phone,
        )


def to_full(text: str) -> str:
    """Convert printable ASCII to full-width forms and spaces to U+3000."""

    out = []
    for ch in text or "":
        code = ord(ch)
        if 0x21 <= code <= 0x7E:
            out.append(chr(code + _FULLWIDTH_OFFSET))
        elif ch == " ":
            out.append("　")
        else:
            out.append(ch)
    return "".join(out)


def record(*fields: Any) -> str:
    return ",".join("" if f is None else str(f) for f in fields)


def burden_code(ratio: float) -> int:
    """Burden ratio in tenths, e.g. 0.3 -> 3."""

    return int((Decimal(str(ratio)) * 10).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def uk_record(clinic: ClinicInfo, year_month: str) -> str:
    return record(
        "UK", 1, clinic.prefecture_code, 3, clinic.clinic_code, "",
        to_full(clinic.name), year_month, clinic.facility_code, "00",
    )


def ir_record(clinic: ClinicInfo, year_month: str) -> str:
    return record(
        "IR", 1, clinic.prefecture_code, 3, clinic.clinic_code, "",
        year_month, clinic.phone, clinic.facility_code,
    )


def re_record(receipt_no: int, patient: Mapping[str, Any], year_month: str, ratio: float) -> str:
    ins_code = INSURANCE_TYPE_CODES.get(str(patient.get("insurance_type") or "社保"), DEFAULT_INSURANCE_TYPE_CODE)
    sex = str(patient.get("sex") or "2")
    sex_code = "1" if sex in ("男", "1") else "2"
    code = burden_code(ratio)
    return record(
        "RE", receipt_no, f"{ins_code}1{code}2", year_month,
        patient.get("name_kanji") or "", sex_code, compact_date(patient.get("date_of_birth") or ""),
        code * 10, "", "", "", 1, "", "", "", "",
        patient.get("name_kana") or "", "",
    )


def ho_record(patient: Mapping[str, Any], total_points: int) -> Optional[str]:
    insurer = patient.get("insurer_number")
    if not insurer:
        return None
    symbol = to_full(str(patient["insured_symbol"])) if patient.get("insured_symbol") else ""
    number = str(patient.get("insured_number") or "")
    return record("HO", str(insurer).zfill(8), "", symbol, number, total_points, *([""] * 8))


def ko_record(patient: Mapping[str, Any], total_points: int) -> Optional[str]:
    public_type = patient.get("public_expense_type")
    if not public_type:
        return None
    recipient = patient.get("public_expense_recipient")
    recipient_str = str(recipient).zfill(7) if recipient else ""
    return record("KO", str(public_type).zfill(8), recipient_str, "", 1, total_points, "", "", "", "")


def sy_record(
    code: str,
    name: str,
    start_ym: str,
    outcome: Optional[str],
    end_ym: str,
    modifier: Optional[str],
    tooth: Optional[str],
) -> str:
    return record(
        "SY", code, name, start_ym, OUTCOME_CODES.get(outcome or "", ""), end_ym,
        modifier or "", (tooth or "").replace("#", ""),
    )


def si_record(shikibetsu: str, futan: str, receipt_code: str, teeth: str, points: int, count: int) -> str:
    return record("SI", shikibetsu, futan, receipt_code, teeth, "", points, count)


def iy_record(shikibetsu: str, futan: str, drug_code: str, points: int, count: int) -> str:
    return record("IY", shikibetsu, futan, drug_code, 1, points, count)


def to_record(
    shikibetsu: str,
    futan: str,
    material_code: str,
    quantity: float,
    unit_price: float,
    points: int,
    count: int,
) -> str:
    return record(
        "TO", shikibetsu, futan, material_code, format_number(quantity), format_number(unit_price), points, count
    )


def co_record(code: str, text: str) -> str:
    return record("CO", code, text)


def jd_record(days: Iterable[int]) -> str:
    unique = sorted({d for d in days if 1 <= d <= DAY_SLOTS})
    flags = ["1" if day in unique else "0" for day in range(1, DAY_SLOTS + 1)]
    return record("JD", len(unique), *flags)


def mf_record(window_payment: int) -> str:
    return record("MF", window_payment)


def go_record(receipt_count: int, total_points: int) -> str:
    return record("GO", receipt_count, total_points, 99)


def render(lines: Sequence[str]) -> str:
    """Join records, terminating every one (including ``GO``) with CRLF."""

    return "".join(line + LINE_SEPARATOR for line in lines)


def encode(text: str, encoding: str = "cp932") -> bytes:
    """Encode the file; characters outside ``encoding`` become ``?``."""

    return text.encode(encoding, errors="replace")


__all__ = [
    "ClinicInfo",
    "burden_code",
    "co_record",
    "encode",
    "go_record",
    "ho_record",
    "ir_record",
    "iy_record",
    "jd_record",
    "ko_record",
    "mf_record",
    "re_record",
    "record",
    "render",
    "si_record",
    "sy_record",
    "to_full",
    "to_record",
    "uk_record",
]
