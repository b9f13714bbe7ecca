"""Resolve product codes to unit prices against the external price list.

Codes in the price sheet are typed by hand, so the same product shows up as
``P-100(A)``, ``p100a`` or ``P100A`` depending on who entered it. Resolution
tries a fixed ladder of spellings and, failing that, a prefix search whose
hits are reported as fuzzy matches for data-quality follow-up.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from . import log
from .catalog import PriceEntry, SnapshotCache
from .constants import FUZZY_PREFIX_LENGTH
from .errors import ValidationError

ZERO = Decimal("0")


@dataclass(frozen=True)
class FuzzyMatch:
    """Diagnostic record of a price taken from a merely similar code."""

    requested_code: str
    matched_code: str
    unit_price: Decimal
    candidates: Tuple[str, ...]


def _strip_hyphens(code: str) -> str:
    return code.replace("-", "")


def _strip_parens(code: str) -> str:
    return code.replace("(", "").replace(")", "")


# Precedence order; the same transforms build the lookup table.
CODE_VARIANTS: Tuple[Tuple[str, Callable[[str], str]], ...] = (
    ("exact", lambda code: code),
    ("lower", lambda code: code.lower()),
    ("no-hyphen", _strip_hyphens),
    ("lower-no-hyphen", lambda code: _strip_hyphens(code.lower())),
    ("no-parens", _strip_parens),
    ("lower-no-parens", lambda code: _strip_parens(code.lower())),
    ("no-hyphen-no-parens", lambda code: _strip_parens(_strip_hyphens(code))),
    ("lower-no-hyphen-no-parens", lambda code: _strip_parens(_strip_hyphens(code.lower()))),
)


def build_price_lookup(entries: Iterable[PriceEntry]) -> Dict[str, Decimal]:
    """Index every spelling of every price entry code.

    The table is filled one variant kind at a time, so an exact code is never
    shadowed by a derived spelling of a different entry. Within one kind the
    first entry in table order wins.
    """

    entries = list(entries)
    lookup: Dict[str, Decimal] = {}
    for _, transform in CODE_VARIANTS:
        for entry in entries:
            lookup.setdefault(transform(entry.code), entry.unit_price)
    return lookup


def find_similar_codes(entries: Sequence[PriceEntry], code: str) -> List[PriceEntry]:
    """Entries whose lower-cased code starts with or contains the code prefix."""

    prefix = code.lower()[:FUZZY_PREFIX_LENGTH]
    return [
        entry
        for entry in entries
        if entry.code.lower().startswith(prefix) or prefix in entry.code.lower()
    ]


class PriceResolver:
    """Map product codes to unit prices using a price snapshot cache.

    The cache is injected and owned by the caller; the resolver only reads
    from it, so an unavailable price source degrades to the last snapshot or
    to zero prices instead of failing.
    """

    def __init__(
        self,
        prices: SnapshotCache[PriceEntry],
        *,
        on_fuzzy_match: Optional[Callable[[FuzzyMatch], None]] = None,
    ):
        self._prices = prices
        self._on_fuzzy_match = on_fuzzy_match

    def resolve(self, codes: Iterable[str]) -> Dict[str, Decimal]:
        """Return a price for every distinct code; unmatched codes map to ``0``.

        Raises:
            ValidationError: If any code is empty.
        """

        requested: List[str] = []
        for code in codes:
            if not isinstance(code, str) or not code:
                raise ValidationError("Product codes must be non-empty strings")
            if code not in requested:
                requested.append(code)

        entries = self._prices.get()
        lookup = build_price_lookup(entries)
        result: Dict[str, Decimal] = {}
        for code in requested:
            result[code] = self._resolve_one(code, entries, lookup)
        return result

    def price_for(self, code: str) -> Decimal:
        """Resolve a single code."""

        return self.resolve([code])[code]

    def _resolve_one(self, code: str, entries: Sequence[PriceEntry], lookup: Dict[str, Decimal]) -> Decimal:
        for kind, transform in CODE_VARIANTS:
            variant = transform(code)
            if variant in lookup:
                if kind != "exact":
                    log.debug("Price for '%s' matched via %s spelling '%s'", code, kind, variant)
                return lookup[variant]

        similar = find_similar_codes(entries, code)
        if not similar:
            log.info("No price entry resembles product code '%s'; using 0", code)
            return ZERO

        chosen = similar[0]
        match = FuzzyMatch(
            requested_code=code,
            matched_code=chosen.code,
            unit_price=chosen.unit_price,
            candidates=tuple(entry.code for entry in similar),
        )
        log.warning(
            "Fuzzy price match: '%s' priced as '%s' (%s); candidates: %s",
            code,
            chosen.code,
            chosen.unit_price,
            ", ".join(match.candidates),
        )
        if self._on_fuzzy_match is not None:
            self._on_fuzzy_match(match)
        return chosen.unit_price
