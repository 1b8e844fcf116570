"""Billing pattern matching against a normalised clinical note.

Patterns are evaluated in priority order.  A pattern matches when one of its
keywords appears in the note, none of its exclusion keywords do, at least one
of its ``and_keywords`` (when given) does, and the disambiguation rules for its
category and procedure name accept the note.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

import structlog

from dentbill.code_tables import LineItemCollector, load_json_field
from dentbill.notes import NormalizedNote

logger = structlog.get_logger(__name__)

GUIDANCE_CODE = "B-SHIDO"
GUIDANCE_CODE_INITIAL = "B-SHIDO-init"
SCALING_CODE = "I011-1"

_BLOCK_RE = re.compile(r"([1-6])\s*ブロック")


@dataclass(frozen=True)
class BillingPattern:
    pattern_name: str
    category: str
    soap_keywords: Tuple[str, ...] = ()
    soap_exclude_keywords: Tuple[str, ...] = ()
    fee_codes: Tuple[str, ...] = ()
    use_tooth_numbers: bool = False
    and_keywords: Tuple[str, ...] = ()
    priority: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BillingPattern":
        condition = load_json_field(row.get("condition"), {})
        and_keywords = condition.get("and_keywords") if isinstance(condition, dict) else None
        return cls(
            pattern_name=row.get("pattern_name") or "",
            category=row.get("category") or "",
            soap_keywords=_as_strings(load_json_field(row.get("soap_keywords"), [])),
            soap_exclude_keywords=_as_strings(load_json_field(row.get("soap_exclude_keywords"), [])),
            fee_codes=_as_strings(load_json_field(row.get("fee_codes"), [])),
            use_tooth_numbers=bool(row.get("use_tooth_numbers")),
            and_keywords=_as_strings(and_keywords or []),
            priority=int(row.get("priority") or 0),
        )

    @property
    def kind(self) -> "PatternCategory":
        return PatternCategory.parse(self.category)


def _as_strings(values: Any) -> Tuple[str, ...]:
    if not isinstance(values, (list, tuple)):
        return ()
    return tuple(str(v) for v in values if v not in (None, ""))


# ---------------------------------------------------------------------------
# Category rules.  Each returns False when the note rules the pattern out.


def _is_complex_restoration(note: NormalizedNote) -> bool:
    surfaces = note.max_surface_count()
    if surfaces is not None:
        return surfaces >= 2
    return note.contains("複雑")


def _endo_rule(name: str, note: NormalizedNote) -> bool:
    if "抜髄" not in name:
        return True
    if "3根管" in name and not note.contains("3根"):
        return False
    if "2根管" in name and not note.contains("2根"):
        return False
    if "単根管" in name and note.contains_any(("2根", "3根")):
        return False
    return True


def _anesthesia_rule(name: str, note: NormalizedNote) -> bool:
    if "伝達" in name and not note.contains("伝達"):
        return False
    if "浸潤" in name and note.contains("伝達"):
        return False
    return True


def _restoration_rule(name: str, note: NormalizedNote) -> bool:
    complex_ = _is_complex_restoration(note)
    if "複雑" in name and not complex_:
        return False
    if "単純" in name and complex_:
        return False
    return True


def _surgery_rule(name: str, note: NormalizedNote) -> bool:
    difficult = note.contains_any(("難", "埋伏"))
    if "難" in name and not difficult:
        return False
    if "臼歯" in name and "難" not in name and difficult:
        return False
    if "前歯" in name and (difficult or note.contains_any(("臼歯", "奥歯"))):
        return False
    return True


def _prosth_rule(name: str, note: NormalizedNote) -> bool:
    if not any(marker in name for marker in ("FMC", "CAD", "前装冠")):
        return True
    if "CAD" in name and not note.contains("cad"):
        return False
    if "前装" in name and not note.contains_any(("前装", "前歯")):
        return False
    if "大臼歯" in name and not note.contains("大臼歯"):
        return False
    if name == "FMC" and note.contains_any(("cad", "前装", "前歯", "大臼歯")):
        return False
    return True


def _denture_rule(name: str, note: NormalizedNote) -> bool:
    adjust = note.contains_any(("調整", "あたり"))
    repair = note.contains("修理")
    reline = note.contains_any(("裏装", "リライン"))
    seat = note.contains_any(("セット", "装着"))
    new = note.contains_any(("新製", "作製"))
    full = note.contains_any(("総義歯", "フルデンチャー"))
    maintenance_only = (adjust or repair or reline) and not seat and not new

    if "調整" in name and not adjust:
        return False
    if "修理" in name and not repair:
        return False
    if "リライン" in name and not reline:
        return False
    if "装着" in name and not seat:
        return False
    if "総義歯" in name and not full:
        return False
    if "上顎" in name and note.contains("下"):
        return False
    if "下顎" in name and not note.contains("下"):
        return False
    if "部分床" in name and (maintenance_only or full):
        return False
    return True


def _no_rule(name: str, note: NormalizedNote) -> bool:
    return True


class PatternCategory(enum.Enum):
    BASIC = "basic"
    ENDO = "endo"
    ANESTHESIA = "anesthesia"
    RESTORATION = "restoration"
    SURGERY = "surgery"
    PROSTH = "prosth"
    DENTURE = "denture"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PatternCategory":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.OTHER

    @property
    def exclusive(self) -> bool:
        return self in EXCLUSIVE_CATEGORIES

    def accepts(self, pattern_name: str, note: NormalizedNote) -> bool:
        return _CATEGORY_RULES[self](pattern_name, note)


EXCLUSIVE_CATEGORIES = frozenset(
    {PatternCategory.ENDO, PatternCategory.ANESTHESIA, PatternCategory.BASIC}
)

_CATEGORY_RULES: Mapping[PatternCategory, Callable[[str, NormalizedNote], bool]] = {
    PatternCategory.BASIC: _no_rule,
    PatternCategory.ENDO: _endo_rule,
    PatternCategory.ANESTHESIA: _anesthesia_rule,
    PatternCategory.RESTORATION: _restoration_rule,
    PatternCategory.SURGERY: _surgery_rule,
    PatternCategory.PROSTH: _prosth_rule,
    PatternCategory.DENTURE: _denture_rule,
    PatternCategory.OTHER: _no_rule,
}


# ---------------------------------------------------------------------------
# Procedure-name rules applied regardless of category.


def _inlay_rule(name: str, note: NormalizedNote) -> bool:
    if "インレー" not in name:
        return True
    surfaces = note.max_surface_count()
    if surfaces is not None:
        complex_ = surfaces >= 2
    else:
        complex_ = note.contains_any(("複雑", "2面"))
    if "複雑" in name and not complex_:
        return False
    if "単純" in name and complex_:
        return False
    return True


def _post_core_rule(name: str, note: NormalizedNote) -> bool:
    if "支台築造" not in name:
        return True
    metal = note.contains_any(("メタル", "間接"))
    if "メタル" in name and not metal:
        return False
    if "ファイバー" in name and metal:
        return False
    return True


def _pulp_capping_rule(name: str, note: NormalizedNote) -> bool:
    if "覆髄" not in name:
        return True
    if "直接" in name and not note.contains("直接"):
        return False
    if "間接" in name and note.contains("直接"):
        return False
    return True


def _apicoectomy_rule(name: str, note: NormalizedNote) -> bool:
    if "歯根端切除" not in name:
        return True
    return ("大臼歯" in name) == note.contains("大臼歯")


def _seating_rule(name: str, note: NormalizedNote) -> bool:
    if name != "装着":
        return True
    return not note.contains_any(("義歯", "デンチャー", "入れ歯"))


NAME_RULES: Tuple[Callable[[str, NormalizedNote], bool], ...] = (
    _inlay_rule,
    _post_core_rule,
    _pulp_capping_rule,
    _apicoectomy_rule,
    _seating_rule,
)


def pattern_matches(pattern: BillingPattern, note: NormalizedNote) -> bool:
    """Keyword, exclusion and disambiguation checks for one pattern."""

    if not note.contains_any(pattern.soap_keywords):
        return False
    if note.contains_any(pattern.soap_exclude_keywords):
        return False
    if pattern.and_keywords and not note.contains_any(pattern.and_keywords):
        return False
    name = pattern.pattern_name
    if not pattern.kind.accepts(name, note):
        return False
    return all(rule(name, note) for rule in NAME_RULES)


def codes_for(pattern: BillingPattern, is_new: bool) -> List[str]:
    codes = []
    for code in pattern.fee_codes:
        if code == GUIDANCE_CODE and is_new:
            code = GUIDANCE_CODE_INITIAL
        codes.append(code)
    return codes


def apply_patterns(
    patterns: Sequence[BillingPattern],
    note: NormalizedNote,
    collector: LineItemCollector,
    *,
    is_new: bool,
) -> List[BillingPattern]:
    """Add the fee codes of every matching pattern; return the matches."""

    matched: List[BillingPattern] = []
    consumed: set = set()
    for pattern in patterns:
        kind = pattern.kind
        if kind is PatternCategory.BASIC:
            continue
        if kind.exclusive and kind in consumed:
            continue
        if not pattern_matches(pattern, note):
            continue

        teeth = note.teeth if pattern.use_tooth_numbers else []
        for code in codes_for(pattern, is_new):
            collector.add(code, 1, teeth)
        if kind.exclusive:
            consumed.add(kind)
        matched.append(pattern)

    logger.debug(
        "patterns.matched",
        evaluated=len(patterns),
        matched=[p.pattern_name for p in matched],
    )
    return matched


def apply_minimal_fallback(note: NormalizedNote, collector: LineItemCollector) -> None:
    """Keyword rules used when no pattern table is available at all."""

    if note.contains("パノラマ"):
        collector.add("E100-pan")
        collector.add("E-diag")
    if note.contains("デンタル"):
        collector.add("E100-1")
        collector.add("E100-1-diag")
    if note.contains_any(("麻酔", "浸潤")):
        collector.add("K001-1", 1, note.teeth)


def scaling_block_count(note: NormalizedNote) -> int:
    if note.contains_any(("全顎", "フルマウス")) or (
        note.contains("上下") and note.contains_any(("sc", "スケーリング"))
    ):
        return 6
    if note.contains_any(("上顎", "下顎", "片顎")):
        return 3
    match = _BLOCK_RE.search(note.corpus)
    if match:
        return int(match.group(1))
    return 1


def apply_scaling_blocks(note: NormalizedNote, collector: LineItemCollector) -> None:
    if SCALING_CODE in collector.codes:
        collector.set_count(SCALING_CODE, scaling_block_count(note))


__all__ = [
    "BillingPattern",
    "EXCLUSIVE_CATEGORIES",
    "PatternCategory",
    "apply_minimal_fallback",
    "apply_patterns",
    "apply_scaling_blocks",
    "codes_for",
    "pattern_matches",
    "scaling_block_count",
]
