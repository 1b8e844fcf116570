"""Pre-submission check of paid billings (レセプトチェック).

Every billing is checked after its internal codes are translated into 9-digit
receipt codes, so the rule tables (``check_*`` and ``diagnosis_requirements``)
only ever name receipt codes.  Codes that only resolve heuristically are left
out of the rule checks.

A billing's status is ``error`` when it has at least one error-level finding,
``warn`` when it only has warnings and ``ok`` otherwise.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dentbill import models
from dentbill.claims import MATERIAL_PREFIX, ClaimQueryError, line_items_of
from dentbill.code_tables import LineItem, load_json_field
from dentbill.config import get_settings
from dentbill.points import window_payment
from dentbill.receipt_codes import ReceiptCodeTranslator
from dentbill.time_utils import local_date, month_window, parse_year_month

logger = structlog.get_logger(__name__)

CONSULTATION_PREFIX = "A0"
MATERIAL_CATEGORY = "特定器材"
MATERIAL_EXEMPT_CATEGORIES = ("加算", "投薬")
MANAGEMENT_PLAN_KEYWORD = "管理計画書"
BURDEN_TOLERANCE_YEN = 10
NO_BILLINGS_MESSAGE = "該当月の精算済みデータがありません"

RULE_TABLES: Tuple[str, ...] = (
    "check_frequency_limits",
    "check_exclusive_pairs",
    "check_addition_rules",
    "check_procedure_materials",
    "check_age_limits",
    "check_incremental_fees",
    "diagnosis_requirements",
)


class Level(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"


# ---------------------------------------------------------------------------
# Rule rows


@dataclass(frozen=True)
class FrequencyLimit:
    shinryo_code: str
    name: str
    limit_type: str
    max_count: int
    period_months: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "FrequencyLimit":
        return cls(
            shinryo_code=row["shinryo_code"],
            name=row["name"],
            limit_type=row.get("limit_type") or "per_month",
            max_count=int(row["max_count"]),
            period_months=int(row.get("period_months") or 0),
        )

    @property
    def per_day(self) -> bool:
        return self.limit_type == "per_day"

    @property
    def period_label(self) -> str:
        if self.per_day:
            return "1日"
        if self.limit_type == "per_month":
            return "月"
        return f"{self.period_months}ヶ月"


@dataclass(frozen=True)
class ExclusivePair:
    code_a: str
    name_a: str
    code_b: str
    name_b: str
    exclusion_type: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ExclusivePair":
        return cls(row["code_a"], row["name_a"], row["code_b"], row["name_b"], row.get("exclusion_type") or "")

    def within(self, codes: set) -> bool:
        return self.code_a in codes and self.code_b in codes

    def across(self, own: set, other: set) -> bool:
        return (self.code_a in own and self.code_b in other) or (self.code_b in own and self.code_a in other)


@dataclass(frozen=True)
class AdditionRule:
    base_code: str
    base_name: str
    addition_code: str
    addition_name: str
    required_facility: Optional[str] = None
    condition_code: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AdditionRule":
        conditions = load_json_field(row.get("conditions"), {})
        return cls(
            base_code=row["base_code"],
            base_name=row["base_name"],
            addition_code=row["addition_code"],
            addition_name=row["addition_name"],
            required_facility=row.get("required_facility") or None,
            condition_code=conditions.get("shinryo_code") if isinstance(conditions, dict) else None,
        )

    def targets(self, receipt_code: str) -> bool:
        return receipt_code in (self.addition_code, self.condition_code)


@dataclass(frozen=True)
class ProcedureMaterial:
    procedure_code: str
    material_name: str
    is_required: bool = True

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ProcedureMaterial":
        return cls(row["procedure_code"], row["material_name"], bool(row.get("is_required", True)))


@dataclass(frozen=True)
class AgeLimit:
    shinryo_code: str
    name: str
    min_age: Optional[int] = None
    max_age: Optional[int] = None
    age_type: str = "years"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AgeLimit":
        return cls(
            shinryo_code=row["shinryo_code"],
            name=row["name"],
            min_age=row.get("min_age"),
            max_age=row.get("max_age"),
            age_type=row.get("age_type") or "years",
        )

    @property
    def in_months(self) -> bool:
        return self.age_type == "months"

    @property
    def unit(self) -> str:
        return "ヶ月" if self.in_months else "歳"


@dataclass(frozen=True)
class IncrementalFee:
    shinryo_code: str
    name: str
    base_points: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "IncrementalFee":
        return cls(row["shinryo_code"], row["name"], int(row.get("base_points") or 0))


@dataclass(frozen=True)
class DiagnosisRequirement:
    procedure_code_pattern: str
    keywords: Tuple[str, ...]
    icd_prefixes: Tuple[str, ...]
    level: Level
    message: str
    legal_basis: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DiagnosisRequirement":
        level = Level.ERROR if (row.get("error_level") or "error") == "error" else Level.WARNING
        return cls(
            procedure_code_pattern=row["procedure_code_pattern"],
            keywords=tuple(str(k) for k in load_json_field(row.get("required_diagnosis_keywords"), []) or ()),
            icd_prefixes=tuple(str(p) for p in load_json_field(row.get("required_icd_prefixes"), []) or ()),
            level=level,
            message=row["message"],
            legal_basis=row.get("legal_basis") or "",
        )

    def applies_to(self, code: str) -> bool:
        return code.startswith(self.procedure_code_pattern)

    def satisfied_by(self, diagnoses: Sequence[Mapping[str, Any]]) -> bool:
        for dx in diagnoses:
            name = dx.get("diagnosis_name") or ""
            code = dx.get("diagnosis_code") or ""
            if any(kw in name for kw in self.keywords):
                return True
            if any(code.startswith(prefix) for prefix in self.icd_prefixes):
                return True
        return False

    @property
    def full_message(self) -> str:
        return f"{self.message}【{self.legal_basis}】" if self.legal_basis else self.message


@dataclass(frozen=True)
class CheckRules:
    frequency_limits: Tuple[FrequencyLimit, ...] = ()
    exclusive_pairs: Tuple[ExclusivePair, ...] = ()
    addition_rules: Tuple[AdditionRule, ...] = ()
    procedure_materials: Tuple[ProcedureMaterial, ...] = ()
    age_limits: Tuple[AgeLimit, ...] = ()
    incremental_fees: Tuple[IncrementalFee, ...] = ()
    diagnosis_requirements: Tuple[DiagnosisRequirement, ...] = ()

    @classmethod
    def from_session(cls, session: Session) -> "CheckRules":
        def rows(table: sa.Table, *criteria: Any) -> List[Mapping[str, Any]]:
            stmt = sa.select(table)
            if criteria:
                stmt = stmt.where(*criteria)
            return list(session.execute(stmt.order_by(table.c.id)).mappings())

        requirements = models.diagnosis_requirements
        return cls(
            frequency_limits=tuple(FrequencyLimit.from_row(r) for r in rows(models.check_frequency_limits)),
            exclusive_pairs=tuple(ExclusivePair.from_row(r) for r in rows(models.check_exclusive_pairs)),
            addition_rules=tuple(AdditionRule.from_row(r) for r in rows(models.check_addition_rules)),
            procedure_materials=tuple(
                ProcedureMaterial.from_row(r) for r in rows(models.check_procedure_materials)
            ),
            age_limits=tuple(AgeLimit.from_row(r) for r in rows(models.check_age_limits)),
            incremental_fees=tuple(IncrementalFee.from_row(r) for r in rows(models.check_incremental_fees)),
            diagnosis_requirements=tuple(
                DiagnosisRequirement.from_row(r) for r in rows(requirements, requirements.c.is_active.is_(True))
            ),
        )

    def counts(self) -> Dict[str, int]:
        return {
            "frequency_limits": len(self.frequency_limits),
            "exclusive_pairs": len(self.exclusive_pairs),
            "addition_rules": len(self.addition_rules),
            "procedure_materials": len(self.procedure_materials),
            "age_limits": len(self.age_limits),
            "incremental_fees": len(self.incremental_fees),
            "diagnosis_requirements": len(self.diagnosis_requirements),
        }


# ---------------------------------------------------------------------------
# Results


@dataclass(frozen=True)
class Finding:
    level: Level
    rule: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"level": self.level.value, "rule": self.rule, "message": self.message}


@dataclass
class BillingCheck:
    billing_id: int
    patient_id: Optional[str]
    patient_name: str
    findings: List[Finding] = field(default_factory=list)

    def add(self, level: Level, rule: str, message: str) -> None:
        finding = Finding(level, rule, message)
        if finding not in self.findings:
            self.findings.append(finding)

    @property
    def errors(self) -> List[str]:
        return [f.message for f in self.findings if f.level is Level.ERROR]

    @property
    def warnings(self) -> List[str]:
        return [f.message for f in self.findings if f.level is Level.WARNING]

    @property
    def status(self) -> str:
        if self.errors:
            return "error"
        return "warn" if self.warnings else "ok"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "billing_id": self.billing_id,
            "patient_id": self.patient_id,
            "patient_name": self.patient_name,
            "status": self.status,
            "errors": self.errors,
            "warnings": self.warnings,
            "findings": [f.to_dict() for f in self.findings],
        }


@dataclass
class ReceiptCheckReport:
    year_month: str
    results: List[BillingCheck]
    rules_loaded: Dict[str, int]

    @property
    def summary(self) -> Dict[str, int]:
        statuses = [r.status for r in self.results]
        return {
            "total": len(statuses),
            "ok": statuses.count("ok"),
            "warn": statuses.count("warn"),
            "error": statuses.count("error"),
        }

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "year_month": self.year_month,
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary,
            "rules_loaded": dict(self.rules_loaded),
        }
        if not self.results:
            payload["message"] = NO_BILLINGS_MESSAGE
        return payload


# ---------------------------------------------------------------------------
# Checking


@dataclass(frozen=True)
class CheckContext:
    rules: CheckRules
    translator: ReceiptCodeTranslator
    patients: Mapping[str, Mapping[str, Any]]
    diagnoses: Mapping[str, Sequence[Mapping[str, Any]]]
    timezone: str = "Asia/Tokyo"

    def official_code(self, code: str) -> Optional[str]:
        resolved = self.translator.translate(code)
        return None if resolved.is_heuristic else resolved.receipt_code


@dataclass(frozen=True)
class BillingView:
    """A billing row with its line items and their receipt codes."""

    row: Mapping[str, Any]
    items: Tuple[LineItem, ...]
    codes: Mapping[str, str]
    day: date

    @classmethod
    def build(cls, row: Mapping[str, Any], ctx: CheckContext) -> "BillingView":
        items = tuple(line_items_of(row))
        codes = {}
        for item in items:
            official = ctx.official_code(item.code)
            if official:
                codes[item.code] = official
        return cls(row=row, items=items, codes=codes, day=local_date(float(row["created_at"]), ctx.timezone))

    @property
    def billing_id(self) -> int:
        return int(self.row["id"])

    @property
    def patient_id(self) -> Optional[str]:
        return self.row.get("patient_id")

    @property
    def month(self) -> Tuple[int, int]:
        return self.day.year, self.day.month

    @property
    def official_codes(self) -> set:
        return set(self.codes.values())

    def coded_items(self) -> List[Tuple[LineItem, str]]:
        return [(item, self.codes[item.code]) for item in self.items if item.code in self.codes]


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def age_in_years(born: date, on: date) -> int:
    return on.year - born.year - ((on.month, on.day) < (born.month, born.day))


def age_in_months(born: date, on: date) -> int:
    months = (on.year - born.year) * 12 + on.month - born.month
    return months - 1 if on.day < born.day else months


def expected_burden(total_points: int, burden_ratio: float) -> int:
    """Patient burden rounded to the nearest 10 yen, for comparison only."""

    yen = Decimal(window_payment(total_points, burden_ratio))
    return int((yen / 10).quantize(Decimal("1"), rounding=ROUND_HALF_UP)) * 10


def _basic_checks(
    check: BillingCheck,
    view: BillingView,
    patient: Optional[Mapping[str, Any]],
    diagnoses: Sequence[Mapping[str, Any]],
) -> None:
    row = view.row
    total = int(row.get("total_points") or 0)
    if total <= 0:
        check.add(Level.ERROR, "basic", "合計点数が0以下です。処置が正しく入力されているか確認してください【算定要件】")
    if not diagnoses:
        check.add(Level.ERROR, "basic", "傷病名が1つも登録されていません。レセプトには傷病名が必須です【療担規則】")
    if view.items and all(item.code.startswith(CONSULTATION_PREFIX) for item in view.items):
        check.add(
            Level.WARNING,
            "basic",
            "初・再診料のみで処置がありません。処置内容の入力漏れがないか確認してください",
        )
    cured = [dx for dx in diagnoses if dx.get("outcome") == "cured"]
    if cured and len(cured) == len(diagnoses) and view.items:
        check.add(
            Level.WARNING,
            "basic",
            "全ての傷病名が「治癒」ですが処置が算定されています。転帰を「継続」に変更するか、処置を見直してください",
        )

    expected = expected_burden(total, float(row.get("burden_ratio") or 0))
    actual = int(row.get("patient_burden") or 0)
    if abs(actual - expected) > BURDEN_TOLERANCE_YEN:
        check.add(
            Level.ERROR,
            "basic",
            f"患者負担額が計算と不一致です（期待:¥{expected} / 実際:¥{actual}）【算定要件】",
        )
    if not (patient or {}).get("insurance_type"):
        check.add(Level.ERROR, "basic", "保険種別が未設定です。患者情報で保険種別を設定してください【請求要件】")


def _frequency_checks(
    check: BillingCheck,
    view: BillingView,
    same_month: Sequence[BillingView],
    rules: CheckRules,
) -> None:
    same_day = [b for b in same_month if b.day == view.day]
    for _, code in view.coded_items():
        for limit in rules.frequency_limits:
            if limit.shinryo_code != code:
                continue
            # per_period limits only see the loaded month
            pool = same_day if limit.per_day else same_month
            used = sum(item.count for b in pool for item, c in b.coded_items() if c == code)
            if used > limit.max_count:
                check.add(
                    Level.ERROR,
                    "frequency",
                    f"「{limit.name}」は{limit.period_label}{limit.max_count}回までです（現在: {used}回）【算定回数限度】",
                )


def _exclusive_checks(
    check: BillingCheck,
    view: BillingView,
    others: Sequence[BillingView],
    rules: CheckRules,
) -> None:
    own = view.official_codes
    for pair in rules.exclusive_pairs:
        if not pair.within(own):
            continue
        if pair.exclusion_type == "same_day":
            check.add(Level.ERROR, "exclusive", f"「{pair.name_a}」と「{pair.name_b}」は同日に併算定できません【併算定不可】")
        elif pair.exclusion_type == "same_month":
            check.add(Level.ERROR, "exclusive", f"「{pair.name_a}」と「{pair.name_b}」は同月に併算定できません【併算定不可】")

    if not others:
        return
    other_codes = set().union(*(b.official_codes for b in others))
    for pair in rules.exclusive_pairs:
        if pair.exclusion_type == "same_month" and pair.across(own, other_codes):
            check.add(
                Level.WARNING,
                "exclusive",
                f"「{pair.name_a}」と「{pair.name_b}」が同月の別会計で併算定されています【併算定不可・要確認】",
            )


def _age_checks(
    check: BillingCheck,
    view: BillingView,
    patient: Optional[Mapping[str, Any]],
    rules: CheckRules,
) -> None:
    born = _parse_date((patient or {}).get("date_of_birth"))
    if born is None:
        return
    years = age_in_years(born, view.day)
    months = age_in_months(born, view.day)
    for _, code in view.coded_items():
        for rule in rules.age_limits:
            if rule.shinryo_code != code:
                continue
            age = months if rule.in_months else years
            if rule.min_age is not None and age < rule.min_age:
                check.add(
                    Level.WARNING,
                    "age",
                    f"「{rule.name}」は{rule.min_age}{rule.unit}以上が対象です（患者: {years}歳）【年齢制限】",
                )
            if rule.max_age is not None and age > rule.max_age:
                check.add(
                    Level.WARNING,
                    "age",
                    f"「{rule.name}」は{rule.max_age}{rule.unit}以下が対象です（患者: {years}歳）【年齢制限】",
                )


def _addition_checks(check: BillingCheck, view: BillingView, rules: CheckRules) -> None:
    own = view.official_codes
    for _, code in view.coded_items():
        for rule in rules.addition_rules:
            if not rule.targets(code) or rule.base_code in own:
                continue
            message = f"「{rule.addition_name}」は「{rule.base_name}」の算定が前提です"
            if rule.required_facility:
                message += f"。また施設基準「{rule.required_facility}」が必要です"
            check.add(Level.WARNING, "addition", message + "【加算要件】")


def _material_checks(check: BillingCheck, view: BillingView, rules: CheckRules) -> None:
    if any(item.code.startswith(MATERIAL_PREFIX) or item.category == MATERIAL_CATEGORY for item in view.items):
        return
    for item, code in view.coded_items():
        if item.category in MATERIAL_EXEMPT_CATEGORIES:
            continue
        required = [m for m in rules.procedure_materials if m.procedure_code == code and m.is_required]
        if not required:
            continue
        names = "、".join(m.material_name for m in required[:3])
        check.add(Level.WARNING, "material", f"「{item.name}」には材料（{names}等）の算定が必要な場合があります【手技材料】")
        # one reminder per billing
        return


def _incremental_checks(check: BillingCheck, view: BillingView, rules: CheckRules) -> None:
    for item, code in view.coded_items():
        rule = next((r for r in rules.incremental_fees if r.shinryo_code == code), None)
        if rule is None or rule.base_points <= 0:
            continue
        if item.points < rule.base_points:
            check.add(
                Level.WARNING,
                "incremental",
                f"「{rule.name}」の点数が基本点数（{rule.base_points}点）未満です"
                f"（現在: {item.points}点）。きざみ計算を確認してください【きざみ】",
            )


def _diagnosis_checks(
    check: BillingCheck,
    view: BillingView,
    diagnoses: Sequence[Mapping[str, Any]],
    rules: CheckRules,
) -> None:
    for requirement in rules.diagnosis_requirements:
        if not any(requirement.applies_to(item.code) for item in view.items):
            continue
        if not requirement.satisfied_by(diagnoses):
            check.add(requirement.level, "diagnosis", requirement.full_message)


def _carried_warnings(check: BillingCheck, view: BillingView) -> None:
    document_provided = bool(view.row.get("document_provided"))
    for warning in load_json_field(view.row.get("ai_check_warnings"), []) or []:
        if MANAGEMENT_PLAN_KEYWORD in str(warning) and document_provided:
            continue
        check.add(Level.WARNING, "derivation", str(warning))


def check_billings(rows: Sequence[Mapping[str, Any]], ctx: CheckContext) -> List[BillingCheck]:
    """Check every billing row; no database access."""

    views = [BillingView.build(row, ctx) for row in rows]
    results = []
    for view in views:
        pid = view.patient_id
        patient = ctx.patients.get(pid) if pid else None
        diagnoses = ctx.diagnoses.get(pid, ()) if pid else ()
        same_month = [b for b in views if b.patient_id == pid and b.month == view.month]
        others = [b for b in same_month if b.billing_id != view.billing_id]

        check = BillingCheck(
            billing_id=view.billing_id,
            patient_id=pid,
            patient_name=(patient or {}).get("name_kanji") or "不明",
        )
        _basic_checks(check, view, patient, diagnoses)
        _frequency_checks(check, view, same_month, ctx.rules)
        _exclusive_checks(check, view, others, ctx.rules)
        _age_checks(check, view, patient, ctx.rules)
        _addition_checks(check, view, ctx.rules)
        _material_checks(check, view, ctx.rules)
        _incremental_checks(check, view, ctx.rules)
        _diagnosis_checks(check, view, diagnoses, ctx.rules)
        _carried_warnings(check, view)
        results.append(check)
    return results


def _load_context(session: Session, patient_ids: Sequence[str], rules: CheckRules) -> CheckContext:
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
    return CheckContext(
        rules=rules,
        translator=ReceiptCodeTranslator.from_session(session),
        patients=patients,
        diagnoses=diagnoses,
        timezone=get_settings().clinic_timezone,
    )


def run_receipt_check(
    session: Session, year_month: str, *, billing_ids: Optional[Sequence[int]] = None
) -> ReceiptCheckReport:
    """Check the paid billings of ``year_month``, or exactly ``billing_ids``.

    Raises :class:`ValueError` for a malformed ``year_month`` and
    :class:`~dentbill.claims.ClaimQueryError` when the database fails.
    """

    parse_year_month(year_month)
    table = models.billing
    if billing_ids:
        stmt = sa.select(table).where(table.c.id.in_(list(billing_ids)))
    else:
        start, end = month_window(year_month, get_settings().clinic_timezone)
        stmt = (
            sa.select(table)
            .where(table.c.created_at >= start)
            .where(table.c.created_at < end)
            .where(table.c.payment_status == "paid")
        )

    try:
        rows = list(session.execute(stmt.order_by(table.c.created_at, table.c.id)).mappings())
        rules = CheckRules.from_session(session)
        results: List[BillingCheck] = []
        if rows:
            patient_ids = sorted({r["patient_id"] for r in rows if r["patient_id"]})
            results = check_billings(rows, _load_context(session, patient_ids, rules))
    except SQLAlchemyError as exc:
        raise ClaimQueryError(str(exc)) from exc

    report = ReceiptCheckReport(year_month=year_month, results=results, rules_loaded=rules.counts())
    logger.info("receipt_check.completed", year_month=year_month, **report.summary)
    return report


def rule_counts(session: Session) -> Dict[str, int]:
    """Row counts of every rule table plus their ``total``."""

    counts: Dict[str, int] = {}
    try:
        for name in RULE_TABLES:
            table = models.metadata.tables[name]
            stmt = sa.select(sa.func.count()).select_from(table)
            if name == "diagnosis_requirements":
                stmt = stmt.where(table.c.is_active.is_(True))
            counts[name] = int(session.execute(stmt).scalar_one())
    except SQLAlchemyError as exc:
        raise ClaimQueryError(str(exc)) from exc
    counts["total"] = sum(counts.values())
    return counts


__all__ = [
    "BillingCheck",
    "CheckContext",
    "CheckRules",
    "Finding",
    "Level",
    "ReceiptCheckReport",
    "age_in_months",
    "age_in_years",
    "check_billings",
    "expected_burden",
    "rule_counts",
    "run_receipt_check",
]
