"""Cross-check of prescribed drugs against the patient's recorded allergies.

The check only produces warnings; it never removes a prescription.
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence, Tuple

from dentbill.drugs import Prescription


class Severity(str, enum.Enum):
    CRITICAL = "critical"
    WARNING = "warning"


@dataclass(frozen=True)
class AllergyRule:
    """Allergy keywords and the drugs they conflict with.

    ``targets`` are matched as substrings of the prescription's category and
    of the drug name.
    """

    label: str
    keywords: Tuple[str, ...]
    targets: Tuple[str, ...]
    severity: Severity


@dataclass(frozen=True)
class Advisory:
    keywords: Tuple[str, ...]
    message: str


ALLERGY_RULES: Tuple[AllergyRule, ...] = (
    AllergyRule("ペニシリン", ("ペニシリン", "penicillin", "アモキシシリン", "サワシリン"), ("ペニシリン系",), Severity.CRITICAL),
    AllergyRule("ペニシリン", ("ペニシリン", "penicillin"), ("セフェム系",), Severity.WARNING),
    AllergyRule("セフェム", ("セフェム", "cephem", "セフカペン", "フロモックス", "メイアクト"), ("セフェム系",), Severity.CRITICAL),
    AllergyRule("マクロライド", ("マクロライド", "macrolide", "クラリス", "ジスロマック"), ("マクロライド系",), Severity.CRITICAL),
    AllergyRule(
        "NSAIDs",
        ("nsaid", "アスピリン", "aspirin", "ロキソニン", "ロキソプロフェン", "ボルタレン", "鎮痛薬"),
        ("消炎鎮痛薬",),
        Severity.CRITICAL,
    ),
    AllergyRule("アセトアミノフェン", ("アセトアミノフェン", "カロナール"), ("解熱鎮痛薬",), Severity.CRITICAL),
    AllergyRule("ヨード", ("ヨード", "iodine", "イソジン"), ("イソジン",), Severity.WARNING),
)

ADVISORIES: Tuple[Advisory, ...] = (
    Advisory(
        ("局所麻酔", "麻酔", "キシロカイン", "リドカイン", "エピネフリン", "アドレナリン"),
        "[warning] 局所麻酔薬アレルギーの記載があります。麻酔薬の選択にご注意ください。",
    ),
    Advisory(
        ("ラテックス", "latex", "ゴム"),
        "[warning] ラテックスアレルギー: ラテックスフリーのグローブ・ラバーダムを使用してください。",
    ),
)

NONE_SENTINELS = frozenset({"なし", "無し", "特になし", "none", "nkda"})

_SPLIT_RE = re.compile(r"[、,/・\s]+")


def parse_allergies(raw: Any) -> List[str]:
    """Normalise the allergy column into a list of entries.

    Accepts a JSON list, a Python list or free text.  A list holding only
    "none" sentinels is returned empty.
    """

    if raw in (None, "", b""):
        return []
    values: Iterable[Any]
    if isinstance(raw, (list, tuple)):
        values = raw
    else:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        try:
            loaded = json.loads(text)
        except ValueError:
            loaded = None
        values = loaded if isinstance(loaded, list) else _SPLIT_RE.split(text)

    entries = [str(v).strip() for v in values if str(v).strip()]
    return [e for e in entries if e.lower() not in NONE_SENTINELS]


def _mentions(allergies: Sequence[str], keywords: Iterable[str]) -> bool:
    lowered = [a.lower() for a in allergies]
    return any(kw.lower() in entry for kw in keywords for entry in lowered)


def _conflicts(rule: AllergyRule, prescription: Prescription) -> bool:
    haystack = " ".join((prescription.category, prescription.drug.drug_category, prescription.drug.name))
    return any(target in haystack for target in rule.targets)


def check_allergies(allergies: Sequence[str], prescriptions: Sequence[Prescription]) -> List[str]:
    """Return warning strings for the allergy list and prescriptions."""

    if not allergies:
        return []

    warnings: List[str] = [f"[warning] アレルギー登録あり: {'、'.join(allergies)}"]
    for rule in ALLERGY_RULES:
        if not _mentions(allergies, rule.keywords):
            continue
        for prescription in prescriptions:
            if not _conflicts(rule, prescription):
                continue
            message = (
                f"[{rule.severity.value}] {rule.label}アレルギー: "
                f"{prescription.drug.name}（{prescription.category}）が処方されています。処方内容を確認してください。"
            )
            if message not in warnings:
                warnings.append(message)

    for advisory in ADVISORIES:
        if _mentions(allergies, advisory.keywords) and advisory.message not in warnings:
            warnings.append(advisory.message)
    return warnings


__all__ = [
    "ADVISORIES",
    "ALLERGY_RULES",
    "AllergyRule",
    "Severity",
    "check_allergies",
    "parse_allergies",
]
