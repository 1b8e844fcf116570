"""Translation of internal procedure codes into claim-file codes.

Each internal code is mapped to the 9-digit procedure code and the 2-digit
treatment category (診療識別) used by the ``SI`` record.  Resolution order:

1. the static :data:`CODE_MAP`;
2. the ``fee_master_receipt`` table keyed by ``kubun`` and ``sub`` code;
3. a code that already is a 9-digit number, with its category looked up in
   the same table;
4. a category guessed from the first letter of the code, with a warning.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.orm import Session

from dentbill import models

DEFAULT_SHIKIBETSU = "80"

_NINE_DIGITS_RE = re.compile(r"^\d{9}$")

# internal code -> (receipt code, 診療識別)
CODE_MAP: Mapping[str, Tuple[str, str]] = MappingProxyType(
    {
        "A000": ("301000110", "11"),
        "A000-2": ("301000210", "11"),
        "A000-meisai": ("301000370", "11"),
        "A000-nyuji": ("301000550", "11"),
        "A002": ("301001610", "12"),
        "A002-2": ("301001710", "12"),
        "A002-nyuji": ("301002750", "12"),
        "A001-a": ("302000610", "13"),
        "A001-b": ("301002750", "12"),
        "B000-4": ("302000110", "13"),
        "B000-4-doc": ("302000150", "13"),
        "B000-4-choki": ("302000170", "13"),
        "B000-4-info": ("302000160", "13"),
        "B000-8": ("302005010", "13"),
        "B001-2": ("302000610", "13"),
        "B002": ("302000710", "13"),
        "B004-6-2": ("302003510", "13"),
        "D001": ("306000110", "31"),
        "D002-1": ("306000210", "31"),
        "D002-2": ("306000310", "31"),
        "D002-mix": ("306000410", "31"),
        "D009": ("306001010", "31"),
        "E100-1": ("307000110", "31"),
        "E100-pano": ("307000510", "31"),
        "E100-ct": ("307001010", "31"),
        "E100-1-diag": ("307000150", "31"),
        "E200-diag": ("307100110", "31"),
        "F100": ("305000110", "21"),
        "F200": ("305001010", "21"),
        "F400": ("305000610", "21"),
        "F500": ("305000810", "21"),
        "I000-1": ("309000110", "41"),
        "I000-2": ("309000210", "41"),
        "I000-3": ("309000310", "41"),
        "I000-4": ("309000410", "41"),
        "I005-1": ("309002110", "41"),
        "I005-2": ("309002210", "41"),
        "I005-3": ("309002310", "41"),
        "I006-1": ("309002410", "41"),
        "I006-2": ("309002510", "41"),
        "I006-3": ("309002610", "41"),
        "I007-1": ("309002710", "41"),
        "I007-2": ("309002810", "41"),
        "I007-3": ("309002910", "41"),
        "I008-1": ("309003610", "41"),
        "I008-2": ("309003710", "41"),
        "I008-3": ("309003810", "41"),
        "I010": ("309004010", "41"),
        "I010-2": ("309004110", "41"),
        "I011-1": ("309004810", "41"),
        "I011-2": ("309004910", "41"),
        "I011-1-3": ("309005510", "41"),
        "I011-2-1": ("309005010", "41"),
        "I011-2-2": ("309005110", "41"),
        "I011-2-3": ("309005210", "41"),
        "P-SC": ("309004810", "41"),
        "P-SRP": ("309005210", "41"),
        "P-SRP-zen": ("309005010", "41"),
        "P-SRP-sho": ("309005110", "41"),
        "I014": ("309006010", "41"),
        "I017": ("309007010", "41"),
        "I020": ("309008010", "41"),
        "I020-direct": ("309008110", "41"),
        "I029": ("309010010", "41"),
        "I030": ("309010110", "41"),
        "I030-2": ("309010210", "41"),
        "I032": ("309011010", "41"),
        "I032-dh": ("309011020", "41"),
        "J-SEAL": ("310099010", "41"),
        "SEALANT": ("310099010", "41"),
        "J000-1": ("310000010", "42"),
        "J000-2": ("310000110", "42"),
        "J000-3": ("310000210", "42"),
        "J000-4": ("310000410", "42"),
        "J000-5": ("310000510", "42"),
        "J000-6": ("310000310", "42"),
        "J001": ("310001010", "43"),
        "J001-2": ("310001210", "43"),
        "J002": ("310002010", "43"),
        "J003": ("310003010", "43"),
        "J004": ("310004010", "43"),
        "J004-2": ("310004110", "43"),
        "J004-2-1": ("310004210", "43"),
        "J004-2-2": ("310004220", "43"),
        "J006": ("310006010", "43"),
        "J063": ("310063010", "43"),
        "J084": ("310084010", "43"),
        "K001-1": ("311000210", "54"),
        "K001-2": ("311000310", "54"),
        "K002": ("311001010", "54"),
        "M-ADJ": ("312090010", "64"),
        "M-DEBOND": ("312080010", "64"),
        "M-DEBOND2": ("312080020", "64"),
        "M000-2": ("312000210", "61"),
        "M001-1": ("312001110", "61"),
        "M001-2": ("312001210", "61"),
        "M001-sho": ("312001110", "61"),
        "M001-3-1": ("312001310", "61"),
        "M001-3-2": ("312001410", "61"),
        "M002-1": ("312002110", "61"),
        "M002-2": ("312002210", "61"),
        "M003-1": ("312003110", "62"),
        "M003-2": ("312003210", "62"),
        "M003-3": ("312003310", "62"),
        "M003-2-1": ("312003510", "62"),
        "M003-2-2": ("312003610", "62"),
        "M003-2-3": ("312003710", "62"),
        "M005": ("312005010", "62"),
        "M009-CR": ("312009110", "62"),
        "M001-fuku": ("312001210", "61"),
        "M-IN-sho": ("312001310", "61"),
        "M-IN-fuku": ("312001410", "61"),
        "M-POST": ("312002110", "61"),
        "M-POST-cast": ("312002210", "61"),
        "M-TEK": ("312000210", "61"),
        "M-BITE": ("312006010", "62"),
        "M-IMP": ("312003610", "62"),
        "M-IMP-sei": ("312003710", "62"),
        "M-SET": ("312005010", "62"),
        "DEN-SET": ("312005210", "62"),
        "M009-CR-fuku": ("312009210", "62"),
        "M010-1": ("312010110", "62"),
        "M010-2": ("312010210", "62"),
        "M010-3-": ("312010810", "62"),
        "M-CRN-zen-dai": ("312015110", "63"),
        "M-CRN-zen": ("312015210", "63"),
        "M-CRN-ko": ("312015310", "63"),
        "M-CRN-nyu": ("312015710", "63"),
        "M-CRN-cad2": ("312015410", "63"),
        "M-CRN-cad2-dai": ("312015510", "63"),
        "BR-PON": ("312016010", "63"),
        "M-HOHEKI": ("312020110", "63"),
        "DEN-1-4": ("312018110", "63"),
        "DEN-5-8": ("312018210", "63"),
        "DEN-9-11": ("312018310", "63"),
        "DEN-12-14": ("312018410", "63"),
        "DEN-FULL-UP": ("312018510", "63"),
        "DEN-FULL-LO": ("312018610", "63"),
        "DEN-REP": ("312029010", "64"),
        "DEN-RELINE": ("312030010", "64"),
        "DEN-ADJ": ("312090010", "64"),
    }
)

_HEURISTIC_SHIKIBETSU: Mapping[str, str] = MappingProxyType(
    {
        "A": "11",
        "B": "13",
        "H": "13",
        "D": "31",
        "E": "31",
        "F": "21",
        "I": "41",
        "J": "42",
        "K": "54",
        "M": "62",
    }
)


@dataclass(frozen=True)
class ReceiptCode:
    receipt_code: str
    shikibetsu: str
    resolved_by: str

    @property
    def is_heuristic(self) -> bool:
        return self.resolved_by == "heuristic"


def split_code(code: str) -> Tuple[str, str]:
    """``"I011-2-3"`` -> ``("I011", "2-3")``."""

    kubun, _, sub = code.partition("-")
    return kubun, sub


class ReceiptCodeTranslator:
    """Resolve internal codes against the static map and a DB fallback table."""

    def __init__(self, db_rows: Iterable[Tuple[str, str, str, Optional[str]]] = ()) -> None:
        lookup: Dict[str, Tuple[str, str]] = {}
        for kubun, sub, receipt_code, shikibetsu in db_rows:
            lookup[f"{kubun}__{sub or ''}"] = (receipt_code, shikibetsu or "")
        self._db: Mapping[str, Tuple[str, str]] = MappingProxyType(lookup)

    @classmethod
    def from_session(cls, session: Session) -> "ReceiptCodeTranslator":
        t = models.fee_master_receipt
        rows = session.execute(
            sa.select(t.c.kubun_code, t.c.sub_code, t.c.receipt_code, t.c.shinryo_shikibetsu).order_by(t.c.id)
        ).all()
        return cls(tuple(row) for row in rows)

    def _reverse_lookup(self, receipt_code: str) -> Optional[str]:
        direct = self._db.get(f"__{receipt_code}")
        if direct is not None:
            return direct[1]
        for rc, shikibetsu in self._db.values():
            if rc == receipt_code:
                return shikibetsu
        return None

    def translate(self, code: str, name: str = "", warnings: Optional[List[str]] = None) -> ReceiptCode:
        mapped = CODE_MAP.get(code)
        if mapped is not None:
            return ReceiptCode(mapped[0], mapped[1], "static")

        kubun, sub = split_code(code)
        found = self._db.get(f"{kubun}__{sub}")
        if found is not None:
            return ReceiptCode(found[0], found[1], "database")

        if _NINE_DIGITS_RE.match(code):
            return ReceiptCode(code, self._reverse_lookup(code) or DEFAULT_SHIKIBETSU, "passthrough")

        if warnings is not None:
            warnings.append(f"receipt_code未解決: {code} ({name})")
        shikibetsu = _HEURISTIC_SHIKIBETSU.get(code[:1], DEFAULT_SHIKIBETSU)
        return ReceiptCode(code, shikibetsu, "heuristic")


DRUG_SHIKIBETSU: Mapping[str, str] = MappingProxyType(
    {
        "内服": "21",
        "頓服": "22",
        "外用": "23",
        "注射": "31",
    }
)
DEFAULT_DRUG_SHIKIBETSU = "21"
DEFAULT_MATERIAL_SHIKIBETSU = "70"


def drug_shikibetsu(dosage_form: Optional[str]) -> str:
    return DRUG_SHIKIBETSU.get(dosage_form or "", DEFAULT_DRUG_SHIKIBETSU)


__all__ = [
    "CODE_MAP",
    "DEFAULT_MATERIAL_SHIKIBETSU",
    "ReceiptCode",
    "ReceiptCodeTranslator",
    "drug_shikibetsu",
    "split_code",
]
