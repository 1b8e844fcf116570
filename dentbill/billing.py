"""Billing derivation for a single encounter.

:func:`derive_items` runs the pipeline over an already loaded note and
reference snapshot without touching the database.  :func:`derive_billing`
loads the encounter, runs the pipeline and upserts the ``billing`` row keyed
by the medical record id, so re-running a derivation replaces the previous
line items instead of appending to them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dentbill import models
from dentbill.allergy import check_allergies, parse_allergies
from dentbill.bonuses import add_bonus_items
from dentbill.code_tables import LineItem, LineItemCollector
from dentbill.config import get_settings
from dentbill.drugs import Prescription, add_drug_items, detect_prescriptions, has_prescription_trigger
from dentbill.materials import add_material_items
from dentbill.notes import NormalizedNote, normalize_note
from dentbill.patterns import apply_minimal_fallback, apply_patterns, apply_scaling_blocks
from dentbill.points import Totals, summarize
from dentbill.prosthetics import ProstheticFlags, add_follow_on_items
from dentbill.reference_data import ReferenceSnapshot, load_snapshot
from dentbill.time_utils import to_epoch_seconds, utc_now
from dentbill.visits import classify_encounter

logger = structlog.get_logger(__name__)

INITIAL_VISIT_CODES = ("A000", "A001-a")
FOLLOW_UP_VISIT_CODES = ("A002", "A001-b")

HOME_VISIT_KEYWORDS = ("訪問診療", "訪問")
HOME_VISIT_COMMENTS = (
    {"code": "830100348", "text": "訪問診療訪問先名；", "kubun": "830"},
    {"code": "830100349", "text": "訪問診療患者の状態；", "kubun": "830"},
)

WARN_MANAGEMENT_PLAN = "歯科疾患管理料の算定には管理計画書の印刷・患者への文書提供が必要です。"
WARN_FEW_ITEMS = "算定項目が少ない可能性があります。処置内容をご確認ください。"
WARN_DRUGS = "投薬 {count}品目を自動算定しました。処方内容をご確認ください。"
WARN_UNRESOLVED_PRESCRIPTION = "処方の記載がありますが、薬剤マスタから薬剤を特定できませんでした。"
WARN_CROWN = "補綴（冠・ブリッジ）: 印象・咬合・装着・補綴時診断を自動追加しました。工程をご確認ください。"
WARN_NEW_DENTURE = "義歯新製: 精密印象・咬合・装着・補綴時診断を自動追加しました。欠損歯数・上下顎をご確認ください。"
WARN_DENTURE_MAINTENANCE = "義歯メンテナンス（調整/修理/リライン）を算定しました。"
WARN_HOME_VISIT = "訪問診療コメント: 訪問先名と患者の状態の記載が必要です。請求前に編集してください。"


class BillingError(Exception):
    """Structural failure of a derivation; carries a kind and a detail."""

    kind = "billing_error"
    status_code = 500

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.kind)
        self.detail = detail


class EncounterNotFoundError(BillingError):
    kind = "encounter_not_found"
    status_code = 404


class FeeTableEmptyError(BillingError):
    kind = "fee_table_empty"


class PersistenceError(BillingError):
    kind = "persistence_failure"


class BillingNotFoundError(BillingError):
    kind = "billing_not_found"
    status_code = 404


@dataclass
class Derivation:
    """Pipeline output for one encounter before it is stored."""

    is_new: bool
    items: List[LineItem]
    totals: Totals
    burden_ratio: float
    warnings: List[str] = field(default_factory=list)
    receipt_comments: List[Dict[str, str]] = field(default_factory=list)
    prescriptions: List[Prescription] = field(default_factory=list)


@dataclass
class BillingResult:
    billing_id: int
    encounter_id: str
    derivation: Derivation

    def to_dict(self) -> Dict[str, Any]:
        d = self.derivation
        return {
            "billing_id": self.billing_id,
            "encounter_id": self.encounter_id,
            "is_new": d.is_new,
            "total_points": d.totals.total_points,
            "patient_burden": d.totals.patient_burden,
            "insurance_claim": d.totals.insurance_claim,
            "line_items": [item.to_dict() for item in d.items],
            "warnings": list(d.warnings),
            "receipt_comments": list(d.receipt_comments),
            "prescribed_drugs": [p.summary() for p in d.prescriptions],
        }


def _collect_warnings(
    *,
    is_new: bool,
    item_count: int,
    note: NormalizedNote,
    prescriptions: Sequence[Prescription],
    flags: ProstheticFlags,
) -> List[str]:
    warnings: List[str] = []
    if is_new:
        warnings.append(WARN_MANAGEMENT_PLAN)
    if item_count <= 2:
        warnings.append(WARN_FEW_ITEMS)
    if prescriptions:
        warnings.append(WARN_DRUGS.format(count=len(prescriptions)))
    elif has_prescription_trigger(note):
        warnings.append(WARN_UNRESOLVED_PRESCRIPTION)
    if flags.crown:
        warnings.append(WARN_CROWN)
    if flags.new_denture:
        warnings.append(WARN_NEW_DENTURE)
    if flags.denture_maintenance:
        warnings.append(WARN_DENTURE_MAINTENANCE)
    return warnings


def derive_items(
    snapshot: ReferenceSnapshot,
    note: NormalizedNote,
    *,
    is_new: bool,
    burden_ratio: float,
    allergies: Sequence[str] = (),
) -> Derivation:
    """Run the derivation pipeline; pure apart from logging."""

    collector = LineItemCollector(snapshot.fees)

    for code in INITIAL_VISIT_CODES if is_new else FOLLOW_UP_VISIT_CODES:
        collector.add(code)

    if snapshot.patterns:
        apply_patterns(snapshot.patterns, note, collector, is_new=is_new)
    else:
        logger.warning("billing.patterns_unavailable", revision=snapshot.revision_code)
        apply_minimal_fallback(note, collector)
    apply_scaling_blocks(note, collector)

    flags = add_follow_on_items(note, collector)

    prescriptions = detect_prescriptions(note, snapshot.drugs_by_name)
    add_drug_items(prescriptions, collector)

    add_material_items(snapshot.materials, collector)
    add_bonus_items(snapshot.bonuses, collector)

    items = collector.items
    totals = summarize(items, burden_ratio)

    warnings = _collect_warnings(
        is_new=is_new,
        item_count=len(items),
        note=note,
        prescriptions=prescriptions,
        flags=flags,
    )
    comments: List[Dict[str, str]] = []
    if note.contains_any(HOME_VISIT_KEYWORDS):
        comments.extend(dict(c) for c in HOME_VISIT_COMMENTS)
        warnings.append(WARN_HOME_VISIT)
    warnings.extend(check_allergies(allergies, prescriptions))

    return Derivation(
        is_new=is_new,
        items=items,
        totals=totals,
        burden_ratio=burden_ratio,
        warnings=warnings,
        receipt_comments=comments,
        prescriptions=prescriptions,
    )


def _load_encounter(session: Session, encounter_id: str) -> Mapping[str, Any]:
    try:
        record = (
            session.execute(
                sa.select(models.medical_records).where(models.medical_records.c.id == encounter_id)
            )
            .mappings()
            .first()
        )
    except SQLAlchemyError as exc:
        raise EncounterNotFoundError(str(exc)) from exc
    if record is None:
        raise EncounterNotFoundError(f"medical record {encounter_id!r} does not exist")
    return record


def _load_patient(session: Session, patient_id: Optional[str]) -> Optional[Mapping[str, Any]]:
    if not patient_id:
        return None
    return (
        session.execute(sa.select(models.patients).where(models.patients.c.id == patient_id))
        .mappings()
        .first()
    )


def _persist(
    session: Session, record: Mapping[str, Any], derivation: Derivation
) -> int:
    table = models.billing
    now = to_epoch_seconds(utc_now())
    values = {
        "patient_id": record.get("patient_id"),
        "total_points": derivation.totals.total_points,
        "patient_burden": derivation.totals.patient_burden,
        "insurance_claim": derivation.totals.insurance_claim,
        "burden_ratio": derivation.burden_ratio,
        "procedures_detail": json.dumps([i.to_dict() for i in derivation.items], ensure_ascii=False),
        "receipt_comments": (
            json.dumps(derivation.receipt_comments, ensure_ascii=False)
            if derivation.receipt_comments
            else None
        ),
        "ai_check_warnings": json.dumps(derivation.warnings, ensure_ascii=False),
        "claim_status": "pending",
        "payment_status": "unpaid",
        "updated_at": now,
    }
    try:
        existing = session.execute(
            sa.select(table.c.id).where(table.c.record_id == record["id"])
        ).scalar_one_or_none()
        if existing is not None:
            session.execute(sa.update(table).where(table.c.id == existing).values(**values))
            return int(existing)
        result = session.execute(
            sa.insert(table).values(
                record_id=record["id"],
                created_at=now,
                **values,
            )
        )
        session.flush()
        return int(result.inserted_primary_key[0])
    except SQLAlchemyError as exc:
        raise PersistenceError(str(exc)) from exc


def derive_billing(session: Session, encounter_id: str) -> BillingResult:
    """Derive and store the billing for ``encounter_id``."""

    settings = get_settings()
    record = _load_encounter(session, encounter_id)

    try:
        snapshot = load_snapshot(session, baseline=settings.baseline_revision)
    except SQLAlchemyError as exc:
        raise FeeTableEmptyError(str(exc)) from exc
    if not snapshot.fees:
        raise FeeTableEmptyError(f"no fee_master rows for revision {snapshot.revision_code}")

    try:
        is_new = classify_encounter(session, record)
        patient = _load_patient(session, record.get("patient_id"))
    except SQLAlchemyError as exc:
        raise EncounterNotFoundError(str(exc)) from exc

    burden_ratio = settings.default_burden_ratio
    allergies: List[str] = []
    if patient is not None:
        if patient.get("burden_ratio"):
            burden_ratio = float(patient["burden_ratio"])
        allergies = parse_allergies(patient.get("allergies"))

    note = normalize_note(
        record.get("soap_s"),
        record.get("soap_o"),
        record.get("soap_a"),
        record.get("soap_p"),
        record.get("tooth_surfaces"),
    )
    derivation = derive_items(
        snapshot, note, is_new=is_new, burden_ratio=burden_ratio, allergies=allergies
    )
    billing_id = _persist(session, record, derivation)

    logger.info(
        "billing.derived",
        encounter_id=encounter_id,
        billing_id=billing_id,
        is_new=is_new,
        items=len(derivation.items),
        total_points=derivation.totals.total_points,
        warnings=len(derivation.warnings),
    )
    return BillingResult(billing_id=billing_id, encounter_id=encounter_id, derivation=derivation)


def _billing_row(session: Session, encounter_id: str) -> Mapping[str, Any]:
    table = models.billing
    row = session.execute(sa.select(table).where(table.c.record_id == encounter_id)).mappings().first()
    if row is None:
        raise BillingNotFoundError(f"no billing for encounter {encounter_id!r}")
    return row


def confirm_payment(session: Session, encounter_id: str) -> Dict[str, Any]:
    """Mark the billing of ``encounter_id`` as paid."""

    table = models.billing
    try:
        row = _billing_row(session, encounter_id)
        session.execute(
            sa.update(table)
            .where(table.c.id == row["id"])
            .values(payment_status="paid", updated_at=to_epoch_seconds(utc_now()))
        )
    except SQLAlchemyError as exc:
        raise PersistenceError(str(exc)) from exc

    logger.info("billing.payment_confirmed", encounter_id=encounter_id, billing_id=row["id"])
    return {
        "billing_id": row["id"],
        "encounter_id": encounter_id,
        "payment_status": "paid",
        "claim_status": row["claim_status"],
    }


def set_document_provided(session: Session, encounter_id: str, provided: bool = True) -> Dict[str, Any]:
    """Record whether the management plan document was handed to the patient.

    The claim check drops the management plan reminder for such billings.
    """

    table = models.billing
    try:
        row = _billing_row(session, encounter_id)
        session.execute(
            sa.update(table)
            .where(table.c.id == row["id"])
            .values(document_provided=provided, updated_at=to_epoch_seconds(utc_now()))
        )
    except SQLAlchemyError as exc:
        raise PersistenceError(str(exc)) from exc

    logger.info("billing.document_provided", encounter_id=encounter_id, provided=provided)
    return {"billing_id": row["id"], "encounter_id": encounter_id, "document_provided": provided}


__all__ = [
    "BillingError",
    "BillingNotFoundError",
    "BillingResult",
    "Derivation",
    "EncounterNotFoundError",
    "FeeTableEmptyError",
    "PersistenceError",
    "confirm_payment",
    "derive_billing",
    "derive_items",
    "set_document_provided",
]
