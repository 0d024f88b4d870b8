"""
Name screening against sanctions lists and PEP indicators.

The bundled list is a small reference set; deployments load the consolidated
OFAC/EU/UN lists into ``SanctionsList`` at startup.
"""

from __future__ import annotations

from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Iterable, Optional

HIGH_RISK_COUNTRIES: frozenset[str] = frozenset(
    [
        "AF", "BY", "CF", "CN", "CU", "IR", "IQ", "KP", "LY", "MM",
        "RU", "SO", "SS", "SD", "SY", "VE", "YE", "ZW",
    ]
)

PEP_KEYWORDS: tuple[str, ...] = (
    "president",
    "minister",
    "ambassador",
    "general",
    "colonel",
    "director",
    "governor",
    "mayor",
    "senator",
    "deputy",
)

COUNTRY_LIST_NAME = "OFAC Country List"

FUZZY_MATCH_THRESHOLD = 0.85


def is_high_risk_country(country: Optional[str]) -> bool:
    return bool(country) and country.upper() in HIGH_RISK_COUNTRIES


@dataclass(frozen=True)
class NameMatch:
    matched_entity: str
    confidence: int  # 0-100
    list_name: str


def _normalize(name: str) -> str:
    return " ".join(name.lower().split())


class SanctionsList:
    """
    A named list of sanctioned people and entities.

    A screened name matches when it contains a listed name, or when the two
    are similar enough (``difflib`` ratio at or above 0.85).
    """

    DEFAULT_ENTRIES = ("test sanctioned person", "blocked entity")

    def __init__(
        self,
        entries: Optional[Iterable[str]] = None,
        list_name: str = "OFAC SDN List",
        threshold: float = FUZZY_MATCH_THRESHOLD,
    ) -> None:
        self.list_name = list_name
        self.threshold = threshold
        self._entries = [
            _normalize(e) for e in (self.DEFAULT_ENTRIES if entries is None else entries)
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, name: str) -> None:
        self._entries.append(_normalize(name))

    def match(self, name: Optional[str]) -> Optional[NameMatch]:
        if not name or not name.strip():
            return None
        candidate = _normalize(name)

        best: Optional[NameMatch] = None
        for entry in self._entries:
            if entry in candidate:
                return NameMatch(entry, 95, self.list_name)
            ratio = SequenceMatcher(None, candidate, entry).ratio()
            if ratio >= self.threshold:
                confidence = int(round(ratio * 100))
                if best is None or confidence > best.confidence:
                    best = NameMatch(entry, confidence, self.list_name)
        return best


def has_pep_indicator(name: Optional[str]) -> bool:
    """True when any word of the name contains a PEP title keyword."""
    if not name:
        return False
    words = name.lower().split()
    return any(keyword in word for keyword in PEP_KEYWORDS for word in words)
