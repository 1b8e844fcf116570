"""Monthly claim aggregation and UKE file generation.

All paid billing rows created in the target month are grouped by patient, so
each patient gets exactly one claim (``RE`` record) with the points of every
encounter in the month added together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dentbill import models, uke
from dentbill.code_tables import LineItem, load_json_field
from dentbill.config import get_settings
from dentbill.points import window_payment
from dentbill.receipt_codes import DEFAULT_MATERIAL_SHIKIBETSU, ReceiptCodeTranslator, drug_shikibetsu
from dentbill.teeth import format_teeth
from dentbill.time_utils import local_day_of_month, month_window, parse_year_month, to_epoch_seconds, utc_now

logger = structlog.get_logger(__name__)

BONUS_PREFIX = "BONUS-"
DRUG_PREFIX = "DRUG-"
MATERIAL_PREFIX = "MAT-"


class ClaimGenerationError(Exception):
    kind = "claim_generation_error"
    status_code = 500

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.kind)
        self.detail = detail


class NoPaidBillingsError(ClaimGenerationError):
    kind = "no_paid_billings"
    status_code = 404


class ClaimQueryError(ClaimGenerationError):
    kind = "query_failure"


@dataclass
class MonthlyClaim:
    year_month: str
    text: str
    receipt_count: int
    total_points: int
    warnings: List[str] = field(default_factory=list)
    billing_ids: List[int] = field(default_factory=list)

    @property
    def filename(self) -> str:
        return f"receipt_{self.year_month}.UKE"

    def encode(self, encoding: str = "cp932") -> bytes:
        return uke.encode(self.text, encoding)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "csv": self.text,
            "receipt_count": self.receipt_count,
            "total_points": self.total_points,
            "year_month": self.year_month,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class ClaimContext:
    """Reference rows needed to render one month of claims."""

    clinic: uke.ClinicInfo
    translator: ReceiptCodeTranslator
    patients: Mapping[str, Mapping[str, Any]]
    diagnoses: Mapping[str, Sequence[Mapping[str, Any]]]
    diagnosis_master: Sequence[Mapping[str, Any]]
    drugs: Mapping[str, Mapping[str, Any]]
    materials: Mapping[str, Mapping[str, Any]]
    default_burden_ratio: float = 0.3
    timezone: str = "Asia/Tokyo"


def group_by_patient(billings: Sequence[Mapping[str, Any]]) -> Dict[Optional[str], List[Mapping[str, Any]]]:
    grouped: Dict[Optional[str], List[Mapping[str, Any]]] = {}
    for row in billings:
        grouped.setdefault(row.get("patient_id"), []).append(row)
    return grouped


def line_items_of(billing: Mapping[str, Any]) -> List[LineItem]:
    raw = load_json_field(billing.get("procedures_detail"), [])
    return [LineItem.from_dict(entry) for entry in raw if isinstance(entry, dict) and entry.get("code")]


def _year_month_of(value: Optional[str], default: str) -> str:
    if not value:
        return default
    return "".join(ch for ch in str(value) if ch.isdigit())[:6]


def diagnosis_records(
    rows: Sequence[Mapping[str, Any]],
    master: Sequence[Mapping[str, Any]],
    year_month: str,
    warnings: List[str],
) -> List[str]:
    by_code = {m["code"]: m for m in master}
    by_name = {m["name"]: m for m in master}
    lines = []
    for dx in rows:
        code = dx.get("diagnosis_code") or ""
        name = dx.get("diagnosis_name") or ""
        entry = by_code.get(code)
        if entry is not None:
            if entry.get("icd_code"):
                code = entry["code"]
        else:
            entry = by_name.get(name)
            if entry is not None:
                code = entry["code"]
            else:
                warnings.append(f'傷病名マスタ未登録: "{name}" (code: {dx.get("diagnosis_code") or ""})')
        lines.append(
            uke.sy_record(
                code,
                name,
                _year_month_of(dx.get("start_date"), year_month),
                dx.get("outcome"),
                _year_month_of(dx.get("end_date"), ""),
                dx.get("modifier_code"),
                dx.get("tooth_number"),
            )
        )
    return lines


def patient_records(
    receipt_no: int,
    patient: Mapping[str, Any],
    billings: Sequence[Mapping[str, Any]],
    ctx: ClaimContext,
    year_month: str,
    warnings: List[str],
) -> List[str]:
    """Records of one patient's claim, from ``RE`` to ``MF``."""

    ratio = float(patient.get("burden_ratio") or ctx.default_burden_ratio)
    total = sum(int(b.get("total_points") or 0) for b in billings)
    futan = "1" if patient.get("public_expense_type") else ""

    lines = [uke.re_record(receipt_no, patient, year_month, ratio)]
    for optional in (uke.ho_record(patient, total), uke.ko_record(patient, total)):
        if optional:
            lines.append(optional)
    lines.extend(
        diagnosis_records(ctx.diagnoses.get(patient["id"], ()), ctx.diagnosis_master, year_month, warnings)
    )

    drug_items: List[LineItem] = []
    material_items: List[LineItem] = []
    for billing in billings:
        for item in line_items_of(billing):
            if item.code.startswith(BONUS_PREFIX):
                continue
            if item.code.startswith(DRUG_PREFIX):
                drug_items.append(item)
                continue
            if item.code.startswith(MATERIAL_PREFIX):
                material_items.append(item)
                continue
            resolved = ctx.translator.translate(item.code, item.name, warnings)
            teeth = format_teeth(item.tooth_numbers, warnings)
            lines.append(
                uke.si_record(resolved.shikibetsu, futan, resolved.receipt_code, teeth, item.points, item.count)
            )

    for item in drug_items:
        yj_code = item.code[len(DRUG_PREFIX):]
        drug = ctx.drugs.get(yj_code) or {}
        lines.append(
            uke.iy_record(
                drug_shikibetsu(drug.get("dosage_form")),
                futan,
                drug.get("receipt_code") or yj_code,
                item.points,
                item.count,
            )
        )

    for item in material_items:
        material_code = item.code[len(MATERIAL_PREFIX):]
        material = ctx.materials.get(material_code) or {}
        lines.append(
            uke.to_record(
                material.get("shinryo_shikibetsu") or DEFAULT_MATERIAL_SHIKIBETSU,
                futan,
                material.get("receipt_code") or material_code,
                material.get("default_quantity") or 1,
                material.get("unit_price") or 0,
                item.points,
                item.count,
            )
        )

    for billing in billings:
        for comment in load_json_field(billing.get("receipt_comments"), []) or []:
            if isinstance(comment, dict):
                lines.append(uke.co_record(comment.get("code", ""), comment.get("text", "")))

    days = [local_day_of_month(float(b["created_at"]), ctx.timezone) for b in billings]
    lines.append(uke.jd_record(days))
    lines.append(uke.mf_record(window_payment(total, ratio)))
    return lines


def build_monthly_claim(
    year_month: str, billings: Sequence[Mapping[str, Any]], ctx: ClaimContext
) -> MonthlyClaim:
    """Render the claim file for ``billings``; no database access."""

    warnings: List[str] = []
    lines = [uke.uk_record(ctx.clinic, year_month), uke.ir_record(ctx.clinic, year_month)]
    receipt_no = 0
    total_all = 0
    included: List[int] = []

    for patient_id, rows in group_by_patient(billings).items():
        patient = ctx.patients.get(patient_id) if patient_id else None
        if patient is None:
            warnings.append(f"患者情報が見つかりません: {patient_id} (billing {len(rows)}件を除外)")
            logger.warning("claims.patient_missing", patient_id=patient_id, billings=len(rows))
            continue
        receipt_no += 1
        total_all += sum(int(b.get("total_points") or 0) for b in rows)
        lines.extend(patient_records(receipt_no, patient, rows, ctx, year_month, warnings))
        included.extend(int(b["id"]) for b in rows)

    lines.append(uke.go_record(receipt_no, total_all))
    return MonthlyClaim(
        year_month=year_month,
        text=uke.render(lines),
        receipt_count=receipt_no,
        total_points=total_all,
        warnings=warnings,
        billing_ids=included,
    )


def _load_context(session: Session, patient_ids: Sequence[str]) -> ClaimContext:
    settings = get_settings()
    clinic_row = session.execute(sa.select(models.clinic_settings).limit(1)).mappings().first()

    patients = {
        row["id"]: row
        for row in session.execute(
            sa.select(models.patients).where(models.patients.c.id.in_(patient_ids))
        ).mappings()
    }
    diagnoses: Dict[str, List[Mapping[str, Any]]] = {}
    for row in session.execute(
        sa.select(models.patient_diagnoses)
        .where(models.patient_diagnoses.c.patient_id.in_(patient_ids))
        .order_by(models.patient_diagnoses.c.id)
    ).mappings():
        diagnoses.setdefault(row["patient_id"], []).append(row)

    master = list(session.execute(sa.select(models.diagnosis_master)).mappings())
    drugs = {row["yj_code"]: row for row in session.execute(sa.select(models.drug_master)).mappings()}
    materials = {
        row["material_code"]: row for row in session.execute(sa.select(models.material_master)).mappings()
    }
    return ClaimContext(
        clinic=uke.ClinicInfo.from_row(clinic_row),
        translator=ReceiptCodeTranslator.from_session(session),
        patients=patients,
        diagnoses=diagnoses,
        diagnosis_master=master,
        drugs=drugs,
        materials=materials,
        default_burden_ratio=settings.default_burden_ratio,
        timezone=settings.clinic_timezone,
    )


def generate_monthly_claim(session: Session, year_month: str, *, mark_billed: bool = False) -> MonthlyClaim:
    """Build the claim file for ``year_month`` from paid billing rows.

    ``mark_billed`` flips ``claim_status`` to ``billed`` for every billing row
    that made it into the file.  Raises :class:`ValueError` for a malformed
    ``year_month``.
    """

    parse_year_month(year_month)
    settings = get_settings()
    start, end = month_window(year_month, settings.clinic_timezone)
    table = models.billing

    try:
        billings = list(
            session.execute(
                sa.select(table)
                .where(table.c.created_at >= start)
                .where(table.c.created_at < end)
                .where(table.c.payment_status == "paid")
                .order_by(table.c.created_at, table.c.id)
            ).mappings()
        )
        if not billings:
            raise NoPaidBillingsError(f"no paid billing rows in {year_month}")
        patient_ids = sorted({b["patient_id"] for b in billings if b["patient_id"]})
        ctx = _load_context(session, patient_ids)
    except SQLAlchemyError as exc:
        raise ClaimQueryError(str(exc)) from exc

    claim = build_monthly_claim(year_month, billings, ctx)

    if mark_billed and claim.billing_ids:
        try:
            session.execute(
                sa.update(table)
                .where(table.c.id.in_(claim.billing_ids))
                .values(claim_status="billed", updated_at=to_epoch_seconds(utc_now()))
            )
        except SQLAlchemyError as exc:
            raise ClaimQueryError(str(exc)) from exc

    logger.info(
        "claims.generated",
        year_month=year_month,
        receipts=claim.receipt_count,
        total_points=claim.total_points,
        warnings=len(claim.warnings),
        marked_billed=mark_billed,
    )
    return claim


__all__ = [
    "ClaimContext",
    "ClaimGenerationError",
    "ClaimQueryError",
    "MonthlyClaim",
    "NoPaidBillingsError",
    "build_monthly_claim",
    "diagnosis_records",
    "generate_monthly_claim",
    "group_by_patient",
    "line_items_of",
    "patient_records",
]
