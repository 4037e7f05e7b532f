import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from priceboard.models import FxQuoteMode, ProductQuote, QuoteSnapshot, SpotQuote

logger = logging.getLogger(__name__)

GRAMS_PER_TROY_OUNCE = 31.1034768


@dataclass(frozen=True)
class CatalogueEntry:
    """
    One derived product. Metals are ``pure gram * grams * purity``,
    currencies are the normalized FX rate for ``key``.
    """
    key: str
    display_name: str
    category: str
    source: str  # "gold", "silver" or "fx"
    grams: float = 1.0
    purity: float = 1.0


# Fixed at build time; the board always shows exactly these rows.
CATALOGUE: Tuple[CatalogueEntry, ...] = (
    CatalogueEntry("GOLD_24K", "24 Karat (Pure) Gram", "gold", "gold"),
    CatalogueEntry("GOLD_22K", "22 Karat Bangle", "gold", "gold", purity=0.916),
    CatalogueEntry("GOLD_18K", "18 Karat", "gold", "gold", purity=0.750),
    CatalogueEntry("GOLD_14K", "14 Karat", "gold", "gold", purity=0.585),
    CatalogueEntry("GRAM_GOLD", "Gram Gold", "gold", "gold", purity=0.995),
    CatalogueEntry("QUARTER_COIN", "Quarter Coin", "gold", "gold", grams=1.754, purity=0.916),
    CatalogueEntry("HALF_COIN", "Half Coin", "gold", "gold", grams=3.508, purity=0.916),
    CatalogueEntry("FULL_COIN", "Full Coin", "gold", "gold", grams=7.016, purity=0.916),
    CatalogueEntry("REPUBLIC_COIN", "Republic Coin", "gold", "gold", grams=7.216, purity=0.916),
    CatalogueEntry("ATA_COIN", "Ata Coin", "gold", "gold", grams=7.216),
    CatalogueEntry("GREMSE_COIN", "Gremse (2.5)", "gold", "gold", grams=17.54, purity=0.916),
    CatalogueEntry("SILVER_GRAM", "Silver (Gram)", "silver", "silver"),
    CatalogueEntry("USD", "US Dollar", "currency", "fx"),
    CatalogueEntry("EUR", "Euro", "currency", "fx"),
    CatalogueEntry("GBP", "British Pound", "currency", "fx"),
)

CATALOGUE_BY_KEY: Dict[str, CatalogueEntry] = {entry.key: entry for entry in CATALOGUE}


def safe_number(value: Any) -> float:
    """Coerce ``value`` to a finite float; anything else becomes 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def percent_change(current: float, previous: Optional[float]) -> float:
    if previous is None or previous == 0:
        return 0.0
    return safe_number((current - previous) / previous * 100)


# --------------- derivation ---------------

def normalize_fx_rates(snapshot: QuoteSnapshot, local_currency: str = "TRY") -> Dict[str, float]:
    """
    Return every FX rate as "local currency per 1 unit of foreign currency".
    Missing, zero or broken rates come back as 0.
    """
    rates: Dict[str, float] = {}
    for code, raw in snapshot.fx_rates.items():
        rate = safe_number(raw)
        if snapshot.fx_mode == FxQuoteMode.UNITS_PER_LOCAL:
            rate = safe_number(1 / rate) if rate else 0.0
        rates[code.upper()] = rate
    rates[local_currency.upper()] = 1.0
    return rates


def spot_to_local(spot: Optional[SpotQuote], rates: Dict[str, float], local_currency: str = "TRY") -> float:
    """Convert a per-ounce spot price into the local currency."""
    if spot is None:
        return 0.0
    price = safe_number(spot.price)
    currency = (spot.currency or local_currency).upper()
    if currency == local_currency.upper():
        return price
    return safe_number(price * rates.get(currency, 0.0))


def derive_prices(snapshot: Optional[QuoteSnapshot], local_currency: str = "TRY") -> Dict[str, float]:
    """
    Turn a quote snapshot into the full catalogue of product prices.

    Every catalogue key is present in the result. A product whose inputs are
    missing or unusable is 0; other products are unaffected.
    """
    if snapshot is None:
        return {entry.key: 0.0 for entry in CATALOGUE}

    rates = normalize_fx_rates(snapshot, local_currency)
    pure_gram = {
        "gold": safe_number(spot_to_local(snapshot.gold, rates, local_currency) / GRAMS_PER_TROY_OUNCE),
        "silver": safe_number(spot_to_local(snapshot.silver, rates, local_currency) / GRAMS_PER_TROY_OUNCE),
    }

    values: Dict[str, float] = {}
    for entry in CATALOGUE:
        if entry.source == "fx":
            values[entry.key] = safe_number(rates.get(entry.key, 0.0))
        else:
            values[entry.key] = safe_number(pure_gram[entry.source] * entry.grams * entry.purity)
    return values


# --------------- change tracking ---------------

class PriceTracker:
    """
    Remembers the previous tick's value per product and builds the
    ``ProductQuote`` set for the current tick.
    """

    def __init__(self) -> None:
        self._previous: Dict[str, float] = {}
        self._quotes: Dict[str, ProductQuote] = {}

    def update(self, values: Dict[str, float]) -> Dict[str, ProductQuote]:
        quotes: Dict[str, ProductQuote] = {}
        for entry in CATALOGUE:
            current = safe_number(values.get(entry.key))
            previous = self._previous.get(entry.key)
            quotes[entry.key] = ProductQuote(
                key=entry.key,
                display_name=entry.display_name,
                category=entry.category,
                current_value=current,
                previous_value=previous,
                percent_change=percent_change(current, previous),
            )

        self._previous = {key: q.current_value for key, q in quotes.items()}
        self._quotes = quotes
        return dict(quotes)

    def quotes(self) -> List[ProductQuote]:
        return [q.model_copy() for q in self._quotes.values()]
