import json
import logging
import random
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from priceboard.models import FxQuoteMode, QuoteSnapshot, SpotQuote
from priceboard.pricing_service import safe_number

logger = logging.getLogger(__name__)

# local-currency-per-unit FX and USD/oz spot levels used in mock mode
MOCK_FX_RATES = {"USD": 34.30, "EUR": 36.90, "GBP": 42.80}
MOCK_GOLD_USD = 2650.0
MOCK_SILVER_USD = 31.0


class QuoteProvider:
    """
    Fetches the raw quote snapshot from the rate proxy.

    - In "real" mode, reads /api/currency, /api/gold and /api/silver.
      Currency rates come back per 1 unit of local currency.
    - A failing endpoint only drops its part of the snapshot; if all three
      fail the snapshot is None and the tick is skipped.
    - Without a proxy URL, jittered mock quotes are produced so the board
      always has something to show.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: float = 8.0):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        if self.base_url is None:
            logger.warning("QUOTE_API_URL not set; using mock quotes only.")

    @classmethod
    def from_settings(cls, settings) -> "QuoteProvider":
        return cls(base_url=settings.quote_api_url, timeout=settings.quote_timeout_seconds)

    @property
    def use_mock(self) -> bool:
        return self.base_url is None

    # --------------- proxy helpers ---------------

    def _get_json(self, path: str) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}{path}"
        try:
            with urlopen(url, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except HTTPError as e:
            logger.warning("Rate proxy %s failed: HTTP %s", path, e.code)
            return None
        except (URLError, OSError, ValueError) as e:
            logger.warning("Rate proxy %s failed: %s", path, e)
            return None
        if not isinstance(payload, dict) or payload.get("error"):
            logger.warning("Rate proxy %s returned no data: %r", path, payload)
            return None
        return payload

    @staticmethod
    def _spot(payload: Optional[Dict[str, Any]]) -> Optional[SpotQuote]:
        if payload is None:
            return None
        return SpotQuote(
            price=safe_number(payload.get("price")),
            currency=str(payload.get("currency") or "USD").upper(),
        )

    # --------------- mock helpers ---------------

    @staticmethod
    def _jitter(value: float, pct: float = 0.3) -> float:
        return value * (1 + random.uniform(-pct, pct) / 100)

    def _mock_snapshot(self, now: datetime) -> QuoteSnapshot:
        return QuoteSnapshot(
            fx_rates={code: round(self._jitter(rate), 4) for code, rate in MOCK_FX_RATES.items()},
            fx_mode=FxQuoteMode.LOCAL_PER_UNIT,
            gold=SpotQuote(price=round(self._jitter(MOCK_GOLD_USD), 2), currency="USD"),
            silver=SpotQuote(price=round(self._jitter(MOCK_SILVER_USD), 3), currency="USD"),
            fetched_at=now,
        )

    # --------------- public API ---------------

    def get_snapshot(self) -> Optional[QuoteSnapshot]:
        now = datetime.now(timezone.utc)

        if self.use_mock:
            return self._mock_snapshot(now)

        currency = self._get_json("/api/currency")
        gold = self._get_json("/api/gold")
        silver = self._get_json("/api/silver")

        if currency is None and gold is None and silver is None:
            logger.error("Rate proxy at %s unreachable; no snapshot this tick", self.base_url)
            return None

        rates = (currency or {}).get("rates") or {}
        if not isinstance(rates, dict):
            logger.warning("Rate proxy /api/currency returned malformed rates: %r", rates)
            rates = {}
        return QuoteSnapshot(
            fx_rates={str(code).upper(): safe_number(rate) for code, rate in rates.items()},
            fx_mode=FxQuoteMode.UNITS_PER_LOCAL,
            gold=self._spot(gold),
            silver=self._spot(silver),
            fetched_at=now,
        )
