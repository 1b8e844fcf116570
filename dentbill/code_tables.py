"""Fee table lookups and per-encounter line item collection.

The active fee view is loaded from the ``fee_master`` table by
:mod:`dentbill.reference_data`.  Abstract or legacy procedure codes emitted by
billing patterns that are missing from the fee view are retried through
:data:`CODE_FALLBACK` before being dropped.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import structlog

logger = structlog.get_logger(__name__)

# Legacy/abstract code -> code carried by the fee master.  Consulted only when
# the requested code has no direct entry, and only once (no chaining).
CODE_FALLBACK: Mapping[str, str] = MappingProxyType(
    {
        "A000-1": "A000",
        "A002-1": "A002",
        "A001-a": "B000-4",
        "A001-b": "B000-4",
        "B-SHIDO-init": "B-SHIDO",
        "E100-pan": "E100-pano",
        "E-diag": "E200-diag",
        "E100-dental": "E100-1",
        "P-SC": "I011-1",
        "P-SRP": "I011-2-3",
        "P-SRP-zen": "I011-2-1",
        "P-SRP-sho": "I011-2-2",
        "SEALANT": "J-SEAL",
        "M001-sho": "M001-1",
        "M001-fuku": "M001-2",
        "M-IN-sho": "M001-3-1",
        "M-IN-fuku": "M001-3-2",
        "M-ADJ": "DEN-ADJ",
    }
)


def load_json_field(raw: Any, default: Any) -> Any:
    """Parse a JSON text column and return a Python structure."""

    if raw in (None, "", b""):
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class FeeItem:
    code: str
    name: str
    points: int
    category: str = ""
    note: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "FeeItem":
        conditions = load_json_field(row.get("conditions"), {})
        note = conditions.get("note", "") if isinstance(conditions, dict) else ""
        return cls(
            code=row["code"],
            name=row.get("name") or "",
            points=int(row.get("points") or 0),
            category=row.get("category") or "",
            note=note or "",
        )


@dataclass
class LineItem:
    """One billable line on an encounter.

    Only ``count`` changes after creation (scaling block count).
    """

    code: str
    name: str
    points: int
    category: str
    count: int = 1
    note: str = ""
    tooth_numbers: List[str] = field(default_factory=list)

    @classmethod
    def from_fee(cls, fee: FeeItem, count: int = 1, teeth: Sequence[str] = ()) -> "LineItem":
        return cls(
            code=fee.code,
            name=fee.name,
            points=fee.points,
            category=fee.category,
            count=count,
            note=fee.note,
            tooth_numbers=list(teeth),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LineItem":
        return cls(
            code=str(data.get("code") or ""),
            name=str(data.get("name") or ""),
            points=int(data.get("points") or 0),
            category=str(data.get("category") or ""),
            count=int(data.get("count") or 1),
            note=str(data.get("note") or ""),
            tooth_numbers=[str(t) for t in data.get("tooth_numbers") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "points": self.points,
            "category": self.category,
            "count": self.count,
            "note": self.note,
            "tooth_numbers": list(self.tooth_numbers),
        }


class FeeTable(Mapping[str, FeeItem]):
    """Read-only view of the fee master for one revision."""

    def __init__(self, items: Iterable[FeeItem], revision_code: Optional[str] = None) -> None:
        self._items: Mapping[str, FeeItem] = MappingProxyType({item.code: item for item in items})
        self.revision_code = revision_code

    def __getitem__(self, code: str) -> FeeItem:
        return self._items[code]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def resolve(self, code: str) -> Optional[FeeItem]:
        """Direct lookup, then one retry through :data:`CODE_FALLBACK`."""

        fee = self._items.get(code)
        if fee is not None:
            return fee
        fallback = CODE_FALLBACK.get(code)
        if fallback is None:
            return None
        return self._items.get(fallback)


class LineItemCollector:
    """Ordered, de-duplicated line items for a single derivation call."""

    def __init__(self, fees: FeeTable) -> None:
        self._fees = fees
        self._items: List[LineItem] = []
        self._seen: set = set()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[LineItem]:
        return iter(self._items)

    def __contains__(self, code: object) -> bool:
        return code in self._seen

    @property
    def items(self) -> List[LineItem]:
        return list(self._items)

    @property
    def codes(self) -> Tuple[str, ...]:
        return tuple(item.code for item in self._items)

    def get(self, code: str) -> Optional[LineItem]:
        for item in self._items:
            if item.code == code:
                return item
        return None

    def add(self, code: str, count: int = 1, teeth: Sequence[str] = ()) -> Optional[LineItem]:
        """Add the fee for ``code``; a code already present is a no-op."""

        if code in self._seen:
            return None
        fee = self._fees.resolve(code)
        if fee is None:
            logger.debug("code_tables.dropped", code=code)
            return None
        if fee.code in self._seen:
            self._seen.add(code)
            return None
        self._seen.update((code, fee.code))
        item = LineItem.from_fee(fee, count=count, teeth=teeth)
        self._items.append(item)
        return item

    def add_custom(self, item: LineItem) -> bool:
        """Append an item priced outside the fee master (drug, material, bonus)."""

        if item.code in self._seen:
            return False
        self._seen.add(item.code)
        self._items.append(replace(item, tooth_numbers=list(item.tooth_numbers)))
        return True

    def set_count(self, code: str, count: int) -> bool:
        item = self.get(code)
        if item is None:
            return False
        item.count = count
        return True


__all__ = [
    "CODE_FALLBACK",
    "FeeItem",
    "FeeTable",
    "LineItem",
    "LineItemCollector",
    "load_json_field",
]
