"""Pytest configuration and shared fixtures."""

import itertools
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from priceboard.config import Settings  # noqa: E402
from priceboard.engine import PriceAlertEngine  # noqa: E402
from priceboard.models import FxQuoteMode, QuoteSnapshot, SpotQuote  # noqa: E402


class ManualScheduler:
    """Keyed one-shot timers driven by ``advance()`` instead of a clock."""

    def __init__(self):
        self.now = 0.0
        self._seq = itertools.count()
        self._timers = {}

    def call_later(self, key, delay, callback):
        self._timers[key] = (self.now + delay, next(self._seq), callback)

    def cancel(self, key):
        return self._timers.pop(key, None) is not None

    def pending(self):
        return sorted(self._timers)

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [(when, seq, key) for key, (when, seq, _) in self._timers.items() if when <= target]
            if not due:
                break
            when, _, key = min(due)
            _, _, callback = self._timers.pop(key)
            self.now = when
            callback()
        self.now = target


class MemoryRuleStorage:
    def __init__(self, rules=None):
        self.saved = list(rules or [])
        self.save_calls = 0

    def load_rules(self):
        return list(self.saved)

    def save_rules(self, rules):
        self.save_calls += 1
        self.saved = [rule.model_copy() for rule in rules]


class FakePush:
    def __init__(self, granted=True):
        self.granted = granted
        self.sent = []

    def is_permission_granted(self):
        return self.granted

    def push(self, title, body):
        self.sent.append((title, body))


def make_snapshot(usd=30.0, eur=32.0, gbp=38.0, gold=2000.0, gold_currency="USD",
                  silver=25.0, silver_currency="USD"):
    return QuoteSnapshot(
        fx_rates={"USD": usd, "EUR": eur, "GBP": gbp},
        fx_mode=FxQuoteMode.LOCAL_PER_UNIT,
        gold=SpotQuote(price=gold, currency=gold_currency),
        silver=SpotQuote(price=silver, currency=silver_currency),
    )


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def storage():
    return MemoryRuleStorage()


@pytest.fixture
def push():
    return FakePush()


@pytest.fixture
def published():
    return []


@pytest.fixture
def audio_calls():
    return []


@pytest.fixture
def engine(storage, scheduler, push, published, audio_calls):
    return PriceAlertEngine(
        storage=storage,
        scheduler=scheduler,
        settings=Settings(),
        push=push,
        audio_sink=lambda direction, wav: audio_calls.append((direction, wav)),
        publish=published.append,
    )


@pytest.fixture
def clock():
    """Hands out strictly increasing UTC timestamps, one per call."""
    start = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
    counter = itertools.count()
    return lambda: start + timedelta(seconds=30 * next(counter))
