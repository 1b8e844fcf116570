"""Reference data loading and bootstrap tables.

A derivation reads every reference table once through :func:`load_snapshot`
and works on the immutable :class:`ReferenceSnapshot` afterwards.  The
``DEFAULT_*`` tables are bootstrap data for new installations and tests and
are written by the ``seed_*`` helpers.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import sqlalchemy as sa
import structlog
from sqlalchemy.orm import Session

from dentbill import models
from dentbill.bonuses import FacilityBonus
from dentbill.code_tables import FeeItem, FeeTable
from dentbill.config import get_settings
from dentbill.drugs import DrugItem, index_by_name
from dentbill.materials import MaterialItem
from dentbill.patterns import BillingPattern

logger = structlog.get_logger(__name__)

DEFAULT_REVISION = "R06"

DEFAULT_FEE_ITEMS: List[Dict[str, Any]] = [
    {"code": "A000", "name": "初診料", "points": 267, "category": "基本診療料"},
    {"code": "A002", "name": "再診料", "points": 58, "category": "基本診療料"},
    {"code": "A001-a", "name": "歯科疾患管理料（初診月）", "points": 100, "category": "医学管理", "note": "管理計画書の提供が必要"},
    {"code": "A001-b", "name": "歯科疾患管理料", "points": 100, "category": "医学管理"},
    {"code": "B-SHIDO", "name": "歯科衛生実地指導料1", "points": 80, "category": "医学管理"},
    {"code": "B-SHIDO-init", "name": "歯科衛生実地指導料1（初回）", "points": 80, "category": "医学管理"},
    {"code": "E100-1", "name": "デンタル撮影", "points": 25, "category": "画像診断"},
    {"code": "E100-1-diag", "name": "デンタル診断", "points": 20, "category": "画像診断"},
    {"code": "E100-pano", "name": "パノラマ撮影", "points": 182, "category": "画像診断"},
    {"code": "E200-diag", "name": "パノラマ診断", "points": 125, "category": "画像診断"},
    {"code": "F100", "name": "処方料", "points": 42, "category": "投薬"},
    {"code": "F200", "name": "調剤料", "points": 11, "category": "投薬"},
    {"code": "I005-1", "name": "抜髄（単根管）", "points": 234, "category": "処置"},
    {"code": "I005-2", "name": "抜髄（2根管）", "points": 408, "category": "処置"},
    {"code": "I005-3", "name": "抜髄（3根管以上）", "points": 600, "category": "処置"},
    {"code": "I011-1", "name": "スケーリング", "points": 72, "category": "処置", "note": "1/3顎につき"},
    {"code": "I011-2-3", "name": "スケーリング・ルートプレーニング（大臼歯）", "points": 100, "category": "処置"},
    {"code": "J000-2", "name": "抜歯（前歯）", "points": 160, "category": "手術"},
    {"code": "J000-3", "name": "抜歯（臼歯）", "points": 270, "category": "手術"},
    {"code": "J000-4", "name": "抜歯（難抜歯）", "points": 470, "category": "手術"},
    {"code": "K001-1", "name": "浸潤麻酔", "points": 30, "category": "麻酔"},
    {"code": "K001-2", "name": "伝達麻酔", "points": 42, "category": "麻酔"},
    {"code": "M001-1", "name": "窩洞形成（単純）", "points": 60, "category": "歯冠修復"},
    {"code": "M001-2", "name": "窩洞形成（複雑）", "points": 86, "category": "歯冠修復"},
    {"code": "M003-1", "name": "支台歯形成（生活歯）", "points": 306, "category": "歯冠修復"},
    {"code": "M009-CR", "name": "充填（単純）", "points": 106, "category": "歯冠修復"},
    {"code": "M009-CR-fuku", "name": "充填（複雑）", "points": 158, "category": "歯冠修復"},
    {"code": "M-POST", "name": "支台築造（ファイバーポスト）", "points": 170, "category": "歯冠修復"},
    {"code": "M-POST-cast", "name": "支台築造（メタルコア）", "points": 176, "category": "歯冠修復"},
    {"code": "M-CRN-ko", "name": "全部金属冠（大臼歯）", "points": 459, "category": "歯冠修復"},
    {"code": "M-CRN-cad2", "name": "CAD/CAM冠", "points": 1200, "category": "歯冠修復"},
    {"code": "M-CRN-zen", "name": "前装金属冠", "points": 1174, "category": "歯冠修復"},
    {"code": "M-IMP", "name": "印象採得", "points": 32, "category": "歯冠修復"},
    {"code": "M-IMP-sei", "name": "精密印象採得", "points": 230, "category": "欠損補綴"},
    {"code": "M-BITE", "name": "咬合採得", "points": 18, "category": "歯冠修復"},
    {"code": "M-SET", "name": "装着", "points": 45, "category": "歯冠修復"},
    {"code": "M-HOHEKI", "name": "補綴時診断料", "points": 90, "category": "歯冠修復"},
    {"code": "M-TEK", "name": "テンポラリークラウン", "points": 34, "category": "歯冠修復"},
    {"code": "DEN-1-4", "name": "部分床義歯（1〜4歯）", "points": 624, "category": "欠損補綴"},
    {"code": "DEN-FULL-UP", "name": "総義歯（上顎）", "points": 2420, "category": "欠損補綴"},
    {"code": "DEN-FULL-LO", "name": "総義歯（下顎）", "points": 2520, "category": "欠損補綴"},
    {"code": "DEN-SET", "name": "義歯装着", "points": 60, "category": "欠損補綴"},
    {"code": "DEN-ADJ", "name": "有床義歯調整", "points": 60, "category": "欠損補綴"},
    {"code": "DEN-REP", "name": "有床義歯修理", "points": 260, "category": "欠損補綴"},
    {"code": "DEN-RELINE", "name": "有床義歯内面適合法", "points": 250, "category": "欠損補綴"},
]


def _pattern(
    name: str,
    category: str,
    keywords: Sequence[str],
    codes: Sequence[str],
    *,
    priority: int,
    exclude: Sequence[str] = (),
    and_keywords: Sequence[str] = (),
    teeth: bool = True,
) -> Dict[str, Any]:
    return {
        "pattern_name": name,
        "category": category,
        "soap_keywords": list(keywords),
        "soap_exclude_keywords": list(exclude),
        "fee_codes": list(codes),
        "use_tooth_numbers": teeth,
        "condition": {"and_keywords": list(and_keywords)} if and_keywords else {},
        "priority": priority,
    }


DEFAULT_BILLING_PATTERNS: List[Dict[str, Any]] = [
    _pattern("初診", "basic", ["初診"], ["A000"], priority=100, teeth=False),
    _pattern("伝達麻酔", "anesthesia", ["伝達"], ["K001-2"], priority=91),
    _pattern("浸潤麻酔", "anesthesia", ["麻酔", "浸潤"], ["K001-1"], priority=90),
    _pattern("抜髄 3根管", "endo", ["抜髄"], ["I005-3"], priority=82),
    _pattern("抜髄 2根管", "endo", ["抜髄"], ["I005-2"], priority=81),
    _pattern("抜髄 単根管", "endo", ["抜髄"], ["I005-1"], priority=80),
    _pattern("CR充填 複雑", "restoration", ["cr", "充填"], ["M009-CR-fuku", "M001-2"], priority=71),
    _pattern("CR充填 単純", "restoration", ["cr", "充填"], ["M009-CR", "M001-sho"], priority=70),
    _pattern("難抜歯", "surgery", ["抜歯"], ["J000-4"], priority=62),
    _pattern("抜歯 臼歯", "surgery", ["抜歯"], ["J000-3"], priority=61, and_keywords=["臼歯", "奥歯"]),
    _pattern("抜歯 前歯", "surgery", ["抜歯"], ["J000-2"], priority=60),
    _pattern("CAD冠", "prosth", ["cad"], ["M-CRN-cad2"], priority=52),
    _pattern("前装冠", "prosth", ["前装", "冠"], ["M-CRN-zen"], priority=51, and_keywords=["前装", "前歯"]),
    _pattern("FMC", "prosth", ["fmc", "全部金属冠"], ["M-CRN-ko"], priority=50),
    _pattern("支台歯形成", "prosth", ["形成"], ["M003-1"], priority=49, exclude=["窩洞形成"]),
    _pattern("支台築造 メタル", "prosth", ["支台築造", "コア"], ["M-POST-cast"], priority=48),
    _pattern("支台築造 ファイバー", "prosth", ["支台築造", "コア"], ["M-POST"], priority=47),
    _pattern("義歯調整", "denture", ["義歯", "デンチャー"], ["DEN-ADJ"], priority=45, teeth=False),
    _pattern("義歯修理", "denture", ["義歯", "デンチャー"], ["DEN-REP"], priority=44, teeth=False),
    _pattern("義歯リライン", "denture", ["義歯", "デンチャー"], ["DEN-RELINE"], priority=43, teeth=False),
    _pattern("総義歯 上顎", "denture", ["義歯", "デンチャー"], ["DEN-FULL-UP"], priority=42, and_keywords=["新製", "作製"], teeth=False),
    _pattern("総義歯 下顎", "denture", ["義歯", "デンチャー"], ["DEN-FULL-LO"], priority=41, and_keywords=["新製", "作製"], teeth=False),
    _pattern("部分床義歯", "denture", ["義歯", "デンチャー"], ["DEN-1-4"], priority=40, and_keywords=["新製", "作製"]),
    _pattern("スケーリング", "perio", ["スケーリング", "sc", "歯石"], ["P-SC"], priority=30, exclude=["srp"], teeth=False),
    _pattern("SRP", "perio", ["srp", "ルートプレーニング"], ["P-SRP"], priority=29),
    _pattern("歯科衛生実地指導", "other", ["tbi", "ブラッシング指導", "実地指導"], ["B-SHIDO"], priority=20, teeth=False),
    _pattern("パノラマ", "other", ["パノラマ"], ["E100-pan", "E-diag"], priority=10, teeth=False),
    _pattern("デンタル", "other", ["デンタル"], ["E100-1", "E100-1-diag"], priority=9),
]

DEFAULT_DRUGS: List[Dict[str, Any]] = [
    {"yj_code": "1149019F1560", "name": "ロキソプロフェンNa錠60mg", "unit_price": 10.0, "unit": "錠", "dosage_form": "内服", "default_dose": "1回1錠", "default_frequency": "疼痛時", "default_days": 3, "drug_category": "消炎鎮痛薬", "receipt_code": "620098801"},
    {"yj_code": "2329021F1021", "name": "レバミピド錠100mg", "unit_price": 10.1, "unit": "錠", "dosage_form": "内服", "default_dose": "1回1錠", "default_frequency": "1日3回毎食後", "default_days": 3, "drug_category": "胃粘膜保護薬", "receipt_code": "620004856"},
    {"yj_code": "1141007F1063", "name": "カロナール錠200", "unit_price": 5.9, "unit": "錠", "dosage_form": "頓服", "default_dose": "1回2錠", "default_frequency": "疼痛時", "default_days": 3, "drug_category": "解熱鎮痛薬", "receipt_code": "620002023"},
    {"yj_code": "6131001M2226", "name": "アモキシシリンカプセル250mg", "unit_price": 11.4, "unit": "カプセル", "dosage_form": "内服", "default_dose": "1回1カプセル", "default_frequency": "1日3回毎食後", "default_days": 3, "drug_category": "抗菌薬（ペニシリン系）", "receipt_code": "620006302"},
    {"yj_code": "6132016F1023", "name": "フロモックス錠100mg", "unit_price": 31.3, "unit": "錠", "dosage_form": "内服", "default_dose": "1回1錠", "default_frequency": "1日3回毎食後", "default_days": 3, "drug_category": "抗菌薬（セフェム系）", "receipt_code": "610443047"},
    {"yj_code": "6149004F1024", "name": "クラリスロマイシン錠200mg", "unit_price": 29.8, "unit": "錠", "dosage_form": "内服", "default_dose": "1回1錠", "default_frequency": "1日2回", "default_days": 3, "drug_category": "抗菌薬（マクロライド系）", "receipt_code": ""},
    {"yj_code": "2260700Q1035", "name": "イソジンガーグル液7%", "unit_price": 2.4, "unit": "mL", "dosage_form": "外用", "default_dose": "適量", "default_frequency": "1日数回", "default_days": 1, "drug_category": "含嗽薬", "receipt_code": ""},
    {"yj_code": "2399708Q1031", "name": "デキサメタゾン口腔用軟膏1mg", "unit_price": 60.9, "unit": "g", "dosage_form": "外用", "default_dose": "適量", "default_frequency": "1日2回", "default_days": 1, "drug_category": "口腔用軟膏", "receipt_code": ""},
]

DEFAULT_MATERIALS: List[Dict[str, Any]] = [
    {"material_code": "CR-001", "name": "歯科充填用材料Ⅰ（複合レジン）", "unit_price": 11.0, "unit": "g", "material_category": "充填材料", "procedure_category": "充填", "default_quantity": 1, "related_fee_codes": ["M009-CR", "M009-CR-fuku"], "receipt_code": "712040000", "shinryo_shikibetsu": ""},
    {"material_code": "MC-001", "name": "歯科鋳造用金銀パラジウム合金", "unit_price": 0, "unit": "g", "material_category": "金属", "procedure_category": "歯冠修復", "default_quantity": 1, "related_fee_codes": ["M-CRN-ko", "M-POST-cast"], "receipt_code": "712010000", "shinryo_shikibetsu": ""},
    {"material_code": "MC-002", "name": "歯科鋳造用銀合金", "unit_price": 140.0, "unit": "g", "material_category": "金属", "procedure_category": "歯冠修復", "default_quantity": 1, "related_fee_codes": ["M-CRN-ko", "M-POST-cast"], "receipt_code": "712010100", "shinryo_shikibetsu": ""},
    {"material_code": "CAD-001", "name": "CAD/CAM冠用材料（Ⅱ）", "unit_price": 3360.0, "unit": "個", "material_category": "CAD/CAM", "procedure_category": "歯冠修復", "default_quantity": 1, "related_fee_codes": ["M-CRN-cad2"], "receipt_code": "712070000", "shinryo_shikibetsu": ""},
    {"material_code": "FP-001", "name": "ファイバーポスト（支台築造用）", "unit_price": 638.0, "unit": "本", "material_category": "支台築造", "procedure_category": "支台築造", "default_quantity": 1, "related_fee_codes": ["M-POST"], "receipt_code": "712080000", "shinryo_shikibetsu": ""},
]

DEFAULT_FACILITY_STANDARDS: List[Dict[str, Any]] = [
    {"code": "歯初診", "name": "歯科点数表の初診料の注1に規定する施設基準", "is_registered": True},
    {"code": "外安全1", "name": "歯科外来診療医療安全対策加算1", "is_registered": True},
    {"code": "外安全2", "name": "歯科外来診療医療安全対策加算2", "is_registered": False},
    {"code": "外感染1", "name": "歯科外来診療感染対策加算1", "is_registered": True},
]

DEFAULT_FACILITY_BONUSES: List[Dict[str, Any]] = [
    {"facility_code": "歯初診", "target_kubun": "A000", "bonus_points": 0, "bonus_type": "unlock", "condition": "初診料の注1"},
    {"facility_code": "外安全1", "target_kubun": "A000", "bonus_points": 12, "bonus_type": "add", "condition": "医療安全対策加算1（初診）"},
    {"facility_code": "外安全1", "target_kubun": "A002", "bonus_points": 2, "bonus_type": "add", "condition": "医療安全対策加算1（再診）"},
    {"facility_code": "外安全2", "target_kubun": "A000", "bonus_points": 13, "bonus_type": "add", "condition": "医療安全対策加算2（初診）"},
    {"facility_code": "外感染1", "target_kubun": "A000", "bonus_points": 12, "bonus_type": "add", "condition": "感染対策加算1（初診）"},
    {"facility_code": "外感染1", "target_kubun": "A002", "bonus_points": 2, "bonus_type": "add", "condition": "感染対策加算1（再診）"},
]

DEFAULT_RECEIPT_CODES: List[Dict[str, Any]] = [
    {"kubun_code": "B", "sub_code": "SHIDO", "receipt_code": "302000810", "shinryo_shikibetsu": "13"},
    {"kubun_code": "B", "sub_code": "SHIDO-init", "receipt_code": "302000810", "shinryo_shikibetsu": "13"},
    {"kubun_code": "I001", "sub_code": "1", "receipt_code": "309001110", "shinryo_shikibetsu": "41"},
    {"kubun_code": "I001", "sub_code": "2", "receipt_code": "309001210", "shinryo_shikibetsu": "41"},
    {"kubun_code": "J000", "sub_code": "4-1", "receipt_code": "310000420", "shinryo_shikibetsu": "42"},
]

DEFAULT_DIAGNOSES: List[Dict[str, Any]] = [
    {"code": "5210001", "icd_code": "K021", "name": "う蝕第２度", "name_kana": "ウショクダイ２ド"},
    {"code": "5220003", "icd_code": "K040", "name": "急性化膿性歯髄炎", "name_kana": "キュウセイカノウセイシズイエン"},
    {"code": "5231004", "icd_code": "K053", "name": "慢性歯周炎", "name_kana": "マンセイシシュウエン"},
    {"code": "8842210", "icd_code": None, "name": "歯肉炎", "name_kana": "シニクエン"},
]

DEFAULT_CLINIC: Dict[str, Any] = {
    "clinic_code": "3101471",
    "prefecture_code": "23",
    "facility_code": "0117",
    "name": "デンタルクリニック",
    "phone": "0000-00-0000",
}

# Claim check rules keyed by table name.  Codes are 9-digit receipt codes.
DEFAULT_CHECK_RULES: Dict[str, List[Dict[str, Any]]] = {
    "check_frequency_limits": [
        {"shinryo_code": "301000110", "name": "初診料", "limit_type": "per_day", "max_count": 1},
        {"shinryo_code": "302000610", "name": "歯科疾患管理料", "limit_type": "per_month", "max_count": 1},
        {"shinryo_code": "307000510", "name": "パノラマ撮影", "limit_type": "per_period", "max_count": 1, "period_months": 3},
    ],
    "check_exclusive_pairs": [
        {"code_a": "301000110", "name_a": "初診料", "code_b": "301001610", "name_b": "再診料", "exclusion_type": "same_day"},
        {"code_a": "309004810", "name_a": "スケーリング", "code_b": "309005210", "name_b": "スケーリング・ルートプレーニング（大臼歯）", "exclusion_type": "same_month"},
    ],
    "check_addition_rules": [
        {"base_code": "301000110", "base_name": "初診料", "addition_code": "301000550", "addition_name": "乳幼児加算（初診）", "addition_type": "add"},
    ],
    "check_procedure_materials": [
        {"procedure_code": "312009110", "procedure_name": "充填（単純）", "material_code": "712040000", "material_name": "歯科充填用材料Ⅰ（複合レジン）", "is_required": True},
        {"procedure_code": "312009210", "procedure_name": "充填（複雑）", "material_code": "712040000", "material_name": "歯科充填用材料Ⅰ（複合レジン）", "is_required": True},
    ],
    "check_age_limits": [
        {"shinryo_code": "301000550", "name": "乳幼児加算（初診）", "max_age": 5, "age_type": "years"},
    ],
    "check_incremental_fees": [
        {"shinryo_code": "309004810", "name": "スケーリング", "base_points": 72, "increment_points": 38, "increment_unit": "1/3顎", "base_count": 1, "max_count": 6},
    ],
    "diagnosis_requirements": [
        {
            "procedure_code_pattern": "I005",
            "required_diagnosis_keywords": ["歯髄炎"],
            "required_icd_prefixes": ["K040"],
            "error_level": "error",
            "message": "抜髄には歯髄炎の傷病名が必要です",
            "legal_basis": "療担規則",
        },
    ],
}

_CHECK_RULE_KEYS: Dict[str, Tuple[str, ...]] = {
    "check_frequency_limits": ("shinryo_code", "limit_type"),
    "check_exclusive_pairs": ("code_a", "code_b", "exclusion_type"),
    "check_addition_rules": ("base_code", "addition_code"),
    "check_procedure_materials": ("procedure_code", "material_code"),
    "check_age_limits": ("shinryo_code",),
    "check_incremental_fees": ("shinryo_code",),
    "diagnosis_requirements": ("procedure_code_pattern",),
}
_JSON_RULE_COLUMNS = frozenset(
    {"conditions", "exception_conditions", "required_diagnosis_keywords", "required_icd_prefixes"}
)


@dataclass(frozen=True)
class ReferenceSnapshot:
    revision_code: str
    fees: FeeTable
    patterns: Tuple[BillingPattern, ...]
    drugs: Tuple[DrugItem, ...]
    materials: Tuple[MaterialItem, ...]
    bonuses: Tuple[FacilityBonus, ...]

    @property
    def drugs_by_name(self) -> Dict[str, DrugItem]:
        return index_by_name(self.drugs)


def current_revision(session: Session, baseline: str) -> str:
    row = session.execute(
        sa.select(models.fee_revisions.c.revision_code)
        .where(models.fee_revisions.c.is_current.is_(True))
        .limit(1)
    ).scalar_one_or_none()
    return row or baseline


def _load_fees(session: Session, revision: str, baseline: str) -> FeeTable:
    fm = models.fee_master

    def _rows(rev: str) -> List[Mapping[str, Any]]:
        stmt = sa.select(fm).where(sa.or_(fm.c.revision_code == rev, fm.c.revision_code.is_(None)))
        return list(session.execute(stmt).mappings())

    rows = _rows(revision)
    has_revision = any(r["revision_code"] == revision for r in rows)
    if not has_revision and revision != baseline:
        logger.info("reference.fee_revision_fallback", revision=revision, baseline=baseline)
        rows = _rows(baseline)
        revision = baseline
    return FeeTable((FeeItem.from_row(r) for r in rows), revision_code=revision)


def _load_patterns(session: Session, revision: str, baseline: str) -> Tuple[BillingPattern, ...]:
    bp = models.billing_patterns

    def _rows(rev: str) -> List[Mapping[str, Any]]:
        stmt = (
            sa.select(bp)
            .where(bp.c.is_active.is_(True))
            .where(bp.c.revision_code == rev)
            .order_by(bp.c.priority.desc(), bp.c.id)
        )
        return list(session.execute(stmt).mappings())

    rows = _rows(revision)
    if not rows and revision != baseline:
        logger.info("reference.pattern_revision_fallback", revision=revision, baseline=baseline)
        rows = _rows(baseline)
    return tuple(BillingPattern.from_row(r) for r in rows)


def _load_bonuses(session: Session) -> Tuple[FacilityBonus, ...]:
    fb = models.facility_bonus
    fs = models.facility_standards
    stmt = (
        sa.select(fb)
        .join(fs, fs.c.code == fb.c.facility_code)
        .where(fb.c.is_active.is_(True))
        .where(fs.c.is_registered.is_(True))
        .order_by(fb.c.id)
    )
    return tuple(FacilityBonus.from_row(r) for r in session.execute(stmt).mappings())


def load_snapshot(session: Session, *, baseline: Optional[str] = None) -> ReferenceSnapshot:
    """Read every reference table needed for one derivation."""

    baseline = baseline or get_settings().baseline_revision
    revision = current_revision(session, baseline)
    fees = _load_fees(session, revision, baseline)
    patterns = _load_patterns(session, revision, baseline)

    drugs = tuple(
        DrugItem.from_row(r)
        for r in session.execute(
            sa.select(models.drug_master)
            .where(models.drug_master.c.is_active.is_(True))
            .order_by(models.drug_master.c.yj_code)
        ).mappings()
    )
    materials = tuple(
        MaterialItem.from_row(r)
        for r in session.execute(
            sa.select(models.material_master)
            .where(models.material_master.c.is_active.is_(True))
            .order_by(models.material_master.c.material_code)
        ).mappings()
    )
    snapshot = ReferenceSnapshot(
        revision_code=fees.revision_code or revision,
        fees=fees,
        patterns=patterns,
        drugs=drugs,
        materials=materials,
        bonuses=_load_bonuses(session),
    )
    logger.debug(
        "reference.snapshot_loaded",
        revision=snapshot.revision_code,
        fees=len(fees),
        patterns=len(patterns),
        drugs=len(drugs),
        materials=len(materials),
        bonuses=len(snapshot.bonuses),
    )
    return snapshot


# ---------------------------------------------------------------------------
# Seeding


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _insert_missing(
    session: Session,
    table: sa.Table,
    rows: Iterable[Mapping[str, Any]],
    key_columns: Sequence[str],
    *,
    overwrite: bool,
) -> int:
    if overwrite:
        session.execute(sa.delete(table))
    inserted = 0
    for row in rows:
        clause = sa.and_(*(table.c[col] == row.get(col) for col in key_columns))
        exists = session.execute(sa.select(sa.literal(1)).select_from(table).where(clause)).first()
        if exists:
            continue
        session.execute(sa.insert(table).values(**row))
        inserted += 1
    return inserted


def seed_fee_items(
    session: Session,
    items: Iterable[Mapping[str, Any]] = DEFAULT_FEE_ITEMS,
    *,
    revision: str = DEFAULT_REVISION,
    overwrite: bool = False,
) -> int:
    existing = session.execute(
        sa.select(models.fee_revisions.c.revision_code).where(models.fee_revisions.c.revision_code == revision)
    ).first()
    if not existing:
        has_current = session.execute(
            sa.select(models.fee_revisions.c.revision_code).where(models.fee_revisions.c.is_current.is_(True))
        ).first()
        session.execute(
            sa.insert(models.fee_revisions).values(revision_code=revision, is_current=not has_current)
        )
    rows = [
        {
            "code": item["code"],
            "name": item["name"],
            "points": int(item["points"]),
            "category": item.get("category"),
            "conditions": _dump({"note": item["note"]}) if item.get("note") else None,
            "revision_code": item.get("revision_code", revision),
        }
        for item in items
    ]
    return _insert_missing(session, models.fee_master, rows, ("code",), overwrite=overwrite)


def seed_billing_patterns(
    session: Session,
    patterns: Iterable[Mapping[str, Any]] = DEFAULT_BILLING_PATTERNS,
    *,
    revision: str = DEFAULT_REVISION,
    overwrite: bool = False,
) -> int:
    rows = [
        {
            "pattern_name": p["pattern_name"],
            "category": p["category"],
            "soap_keywords": _dump(list(p.get("soap_keywords") or [])),
            "soap_exclude_keywords": _dump(list(p.get("soap_exclude_keywords") or [])),
            "fee_codes": _dump(list(p.get("fee_codes") or [])),
            "use_tooth_numbers": bool(p.get("use_tooth_numbers")),
            "condition": _dump(p.get("condition") or {}),
            "priority": int(p.get("priority") or 0),
            "revision_code": p.get("revision_code", revision),
            "is_active": bool(p.get("is_active", True)),
        }
        for p in patterns
    ]
    return _insert_missing(
        session, models.billing_patterns, rows, ("pattern_name", "revision_code"), overwrite=overwrite
    )


def seed_drugs(
    session: Session, drugs: Iterable[Mapping[str, Any]] = DEFAULT_DRUGS, *, overwrite: bool = False
) -> int:
    return _insert_missing(session, models.drug_master, [dict(d) for d in drugs], ("yj_code",), overwrite=overwrite)


def seed_materials(
    session: Session, materials: Iterable[Mapping[str, Any]] = DEFAULT_MATERIALS, *, overwrite: bool = False
) -> int:
    rows = []
    for material in materials:
        row = dict(material)
        row["related_fee_codes"] = _dump(list(row.get("related_fee_codes") or []))
        rows.append(row)
    return _insert_missing(session, models.material_master, rows, ("material_code",), overwrite=overwrite)


def seed_facility_bonuses(
    session: Session,
    standards: Iterable[Mapping[str, Any]] = DEFAULT_FACILITY_STANDARDS,
    bonuses: Iterable[Mapping[str, Any]] = DEFAULT_FACILITY_BONUSES,
    *,
    overwrite: bool = False,
) -> int:
    if overwrite:
        session.execute(sa.delete(models.facility_bonus))
    _insert_missing(session, models.facility_standards, [dict(s) for s in standards], ("code",), overwrite=overwrite)
    return _insert_missing(
        session,
        models.facility_bonus,
        [dict(b) for b in bonuses],
        ("facility_code", "target_kubun", "condition"),
        overwrite=False,
    )


def seed_receipt_codes(
    session: Session, rows: Iterable[Mapping[str, Any]] = DEFAULT_RECEIPT_CODES, *, overwrite: bool = False
) -> int:
    return _insert_missing(
        session, models.fee_master_receipt, [dict(r) for r in rows], ("kubun_code", "sub_code"), overwrite=overwrite
    )


def seed_diagnoses(
    session: Session, rows: Iterable[Mapping[str, Any]] = DEFAULT_DIAGNOSES, *, overwrite: bool = False
) -> int:
    return _insert_missing(session, models.diagnosis_master, [dict(r) for r in rows], ("code",), overwrite=overwrite)


def seed_check_rules(
    session: Session,
    rules: Mapping[str, Iterable[Mapping[str, Any]]] = DEFAULT_CHECK_RULES,
    *,
    overwrite: bool = False,
) -> int:
    inserted = 0
    for table_name, key_columns in _CHECK_RULE_KEYS.items():
        rows = [
            {k: _dump(v) if k in _JSON_RULE_COLUMNS else v for k, v in rule.items()}
            for rule in rules.get(table_name, ())
        ]
        inserted += _insert_missing(
            session, models.metadata.tables[table_name], rows, key_columns, overwrite=overwrite
        )
    return inserted


def seed_clinic(session: Session, clinic: Mapping[str, Any] = DEFAULT_CLINIC) -> bool:
    if session.execute(sa.select(models.clinic_settings.c.id).limit(1)).first():
        return False
    session.execute(sa.insert(models.clinic_settings).values(**clinic))
    return True


def seed_defaults(session: Session, *, overwrite: bool = False) -> Dict[str, int]:
    """Write every ``DEFAULT_*`` table; returns inserted row counts."""

    counts = {
        "fee_master": seed_fee_items(session, overwrite=overwrite),
        "billing_patterns": seed_billing_patterns(session, overwrite=overwrite),
        "drug_master": seed_drugs(session, overwrite=overwrite),
        "material_master": seed_materials(session, overwrite=overwrite),
        "facility_bonus": seed_facility_bonuses(session, overwrite=overwrite),
        "fee_master_receipt": seed_receipt_codes(session, overwrite=overwrite),
        "diagnosis_master": seed_diagnoses(session, overwrite=overwrite),
        "check_rules": seed_check_rules(session, overwrite=overwrite),
        "clinic_settings": int(seed_clinic(session)),
    }
    logger.info("reference.seeded", **counts)
    return counts


__all__ = [
    "DEFAULT_BILLING_PATTERNS",
    "DEFAULT_CHECK_RULES",
    "DEFAULT_CLINIC",
    "DEFAULT_DIAGNOSES",
    "DEFAULT_DRUGS",
    "DEFAULT_FACILITY_BONUSES",
    "DEFAULT_FACILITY_STANDARDS",
    "DEFAULT_FEE_ITEMS",
    "DEFAULT_MATERIALS",
    "DEFAULT_RECEIPT_CODES",
    "DEFAULT_REVISION",
    "ReferenceSnapshot",
    "current_revision",
    "load_snapshot",
    "seed_billing_patterns",
    "seed_check_rules",
    "seed_clinic",
    "seed_defaults",
    "seed_diagnoses",
    "seed_drugs",
    "seed_facility_bonuses",
    "seed_fee_items",
    "seed_materials",
    "seed_receipt_codes",
]
