"""Drug prescription detection and drug fee items.

Keyword groups map the wording clinicians use in the note to canonical drug
names in the drug master.  NSAID groups bring a gastric protectant with them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Tuple

import structlog

from dentbill.code_tables import LineItem, LineItemCollector
from dentbill.notes import NormalizedNote
from dentbill.points import price_to_points

logger = structlog.get_logger(__name__)

PRESCRIPTION_FEE_CODE = "F100"
DISPENSING_FEE_CODE = "F200"
DEFAULT_STOMACH_DRUG = "レバミピド錠100mg"
DRUG_CATEGORY_LABEL = "投薬"
TRIGGER_PHRASES = ("処方", "投薬", "rp")


@dataclass(frozen=True)
class DrugKeywordGroup:
    keywords: Tuple[str, ...]
    drug_names: Tuple[str, ...]
    category: str
    with_stomach: bool = False


PRESCRIPTION_KEYWORDS: Tuple[DrugKeywordGroup, ...] = (
    DrugKeywordGroup(("ロキソニン", "ロキソプロフェン", "痛み止め", "鎮痛"), ("ロキソプロフェンNa錠60mg",), "消炎鎮痛薬", True),
    DrugKeywordGroup(("カロナール", "アセトアミノフェン"), ("カロナール錠200",), "解熱鎮痛薬"),
    DrugKeywordGroup(("ボルタレン", "ジクロフェナク"), ("ボルタレン錠25mg",), "消炎鎮痛薬", True),
    DrugKeywordGroup(("セレコックス", "セレコキシブ"), ("セレコックス錠100mg",), "消炎鎮痛薬", True),
    DrugKeywordGroup(("アモキシシリン", "サワシリン", "パセトシン", "ペニシリン"), ("アモキシシリンカプセル250mg",), "抗菌薬（ペニシリン系）"),
    DrugKeywordGroup(("フロモックス", "セフカペン"), ("フロモックス錠100mg",), "抗菌薬（セフェム系）"),
    DrugKeywordGroup(("メイアクト", "セフジトレン"), ("メイアクトMS錠100mg",), "抗菌薬（セフェム系）"),
    DrugKeywordGroup(("ジスロマック", "アジスロマイシン"), ("ジスロマック錠250mg",), "抗菌薬（マクロライド系）"),
    DrugKeywordGroup(("クラリス", "クラリスロマイシン"), ("クラリスロマイシン錠200mg",), "抗菌薬（マクロライド系）"),
    DrugKeywordGroup(("アズノール", "うがい"), ("アズノールうがい液4%",), "含嗽薬"),
    DrugKeywordGroup(("イソジン",), ("イソジンガーグル液7%",), "含嗽薬"),
    DrugKeywordGroup(("口内炎", "アフタ", "デキサメタゾン軟膏"), ("デキサメタゾン口腔用軟膏1mg",), "口腔用軟膏"),
    DrugKeywordGroup(("ケナログ",), ("ケナログ口腔用軟膏0.1%",), "口腔用軟膏"),
    DrugKeywordGroup(("トランサミン", "トラネキサム酸", "止血"), ("トランサミンカプセル250mg",), "消炎酵素薬"),
    DrugKeywordGroup(("バルトレックス", "バラシクロビル", "ヘルペス"), ("バラシクロビル錠500mg",), "抗ウイルス薬"),
    DrugKeywordGroup(("フロリード", "カンジダ"), ("フロリードゲル経口用2%",), "抗真菌薬"),
    DrugKeywordGroup(("レバミピド", "ムコスタ", "胃薬"), ("レバミピド錠100mg",), "胃粘膜保護薬"),
)


@dataclass(frozen=True)
class DrugItem:
    yj_code: str
    name: str
    unit_price: float
    unit: str = ""
    dosage_form: str = ""
    default_dose: str = ""
    default_frequency: str = ""
    default_days: int = 1
    drug_category: str = ""
    receipt_code: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DrugItem":
        return cls(
            yj_code=row["yj_code"],
            name=row["name"],
            unit_price=float(row.get("unit_price") or 0),
            unit=row.get("unit") or "",
            dosage_form=row.get("dosage_form") or "",
            default_dose=row.get("default_dose") or "",
            default_frequency=row.get("default_frequency") or "",
            default_days=int(row.get("default_days") or 1),
            drug_category=row.get("drug_category") or "",
            receipt_code=row.get("receipt_code") or "",
        )


@dataclass(frozen=True)
class Prescription:
    drug: DrugItem
    quantity: int
    days: int
    category: str

    @property
    def code(self) -> str:
        return f"DRUG-{self.drug.yj_code}"

    @property
    def points(self) -> int:
        return price_to_points(self.drug.unit_price * self.quantity * self.days)

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.drug.name,
            "dose": self.drug.default_dose,
            "frequency": self.drug.default_frequency,
            "days": self.days,
        }

    def to_line_item(self) -> LineItem:
        drug = self.drug
        note = (
            f"{drug.default_dose} {drug.default_frequency} {self.days}日分 "
            f"({format_number(drug.unit_price)}円/{drug.unit})"
        )
        return LineItem(
            code=self.code,
            name=f"【薬剤】{drug.name}",
            points=self.points,
            category=DRUG_CATEGORY_LABEL,
            count=1,
            note=note,
        )


def format_number(value: float) -> str:
    """Render a price without a trailing ``.0`` for whole numbers."""

    if float(value).is_integer():
        return str(int(value))
    return str(value)


def has_prescription_trigger(note: NormalizedNote) -> bool:
    return note.contains_any(TRIGGER_PHRASES)


def detect_prescriptions(
    note: NormalizedNote, drugs_by_name: Mapping[str, DrugItem]
) -> List[Prescription]:
    """Return the drugs the note prescribes, in keyword-group order."""

    prescriptions: List[Prescription] = []
    names: set = set()

    def _prescribe(drug: DrugItem, category: str) -> None:
        if drug.name in names:
            return
        prescriptions.append(Prescription(drug=drug, quantity=1, days=drug.default_days, category=category))
        names.add(drug.name)

    for group in PRESCRIPTION_KEYWORDS:
        if not note.contains_any(group.keywords):
            continue
        for drug_name in group.drug_names:
            drug = drugs_by_name.get(drug_name)
            if drug is None:
                logger.debug("drugs.master_missing", drug=drug_name)
                continue
            _prescribe(drug, group.category)
            if group.with_stomach and DEFAULT_STOMACH_DRUG not in names:
                stomach = drugs_by_name.get(DEFAULT_STOMACH_DRUG)
                if stomach is not None:
                    _prescribe(stomach, "胃粘膜保護薬")
    return prescriptions


def add_drug_items(prescriptions: Sequence[Prescription], collector: LineItemCollector) -> None:
    """Add the technical fees once and one drug fee line per prescription."""

    if not prescriptions:
        return
    collector.add(PRESCRIPTION_FEE_CODE)
    collector.add(DISPENSING_FEE_CODE)
    for prescription in prescriptions:
        collector.add_custom(prescription.to_line_item())


def index_by_name(drugs: Sequence[DrugItem]) -> Dict[str, DrugItem]:
    return {drug.name: drug for drug in drugs}


__all__ = [
    "DEFAULT_STOMACH_DRUG",
    "DrugItem",
    "DrugKeywordGroup",
    "PRESCRIPTION_KEYWORDS",
    "Prescription",
    "add_drug_items",
    "detect_prescriptions",
    "format_number",
    "has_prescription_trigger",
    "index_by_name",
]
