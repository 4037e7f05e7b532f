import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from priceboard.models import AlarmRule, CrossingEvent, ProductQuote, RuleDraft

logger = logging.getLogger(__name__)


class RuleValidationError(ValueError):
    """Raised when a rule draft cannot be stored."""


class RuleStorage(Protocol):
    def load_rules(self) -> List[AlarmRule]: ...

    def save_rules(self, rules: List[AlarmRule]) -> None: ...


def _clean_threshold(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class AlarmRegistry:
    """
    The operator's threshold rules, at most one per product key.

    Every mutation is written through to ``storage`` so a restart comes back
    with exactly the same rules.
    """

    def __init__(self, storage: RuleStorage, known_keys: Optional[Iterable[str]] = None):
        self._storage = storage
        self._known_keys = set(known_keys) if known_keys is not None else None
        self._rules: List[AlarmRule] = self._one_per_key(storage.load_rules())
        logger.info("Loaded %d alarm rule(s)", len(self._rules))

    # --------------- queries ---------------

    def all(self) -> List[AlarmRule]:
        return [rule.model_copy() for rule in self._rules]

    def get(self, rule_id: str) -> Optional[AlarmRule]:
        index = self._index_of(rule_id)
        return None if index is None else self._rules[index].model_copy()

    def active_count(self) -> int:
        return sum(1 for rule in self._rules if rule.active)

    def __len__(self) -> int:
        return len(self._rules)

    # --------------- mutations ---------------

    def upsert(self, draft: RuleDraft, now: Optional[datetime] = None) -> AlarmRule:
        product_key = (draft.product_key or "").strip()
        if not product_key:
            raise RuleValidationError("product_key is required")
        if self._known_keys is not None and product_key not in self._known_keys:
            raise RuleValidationError(f"unknown product_key {product_key!r}")

        upper = _clean_threshold(draft.upper_threshold)
        lower = _clean_threshold(draft.lower_threshold)
        if upper is None and lower is None:
            raise RuleValidationError("at least one of upper_threshold / lower_threshold must be set")

        channels = list(dict.fromkeys(draft.channels))
        if not channels:
            raise RuleValidationError("at least one notification channel must be selected")

        rule = AlarmRule(
            id=uuid.uuid4().hex,
            product_key=product_key,
            upper_threshold=upper,
            lower_threshold=lower,
            channels=channels,
            active=draft.active,
            created_at=now or datetime.now(timezone.utc),
            last_triggered_at=None,
        )

        existing = next((i for i, r in enumerate(self._rules) if r.product_key == product_key), None)
        if existing is None:
            self._rules.append(rule)
            logger.info("Added alarm rule %s for %s", rule.id, product_key)
        else:
            logger.info("Replaced alarm rule %s for %s with %s",
                        self._rules[existing].id, product_key, rule.id)
            self._rules[existing] = rule

        self._persist()
        return rule.model_copy()

    def toggle_active(self, rule_id: str) -> Optional[AlarmRule]:
        index = self._index_of(rule_id)
        if index is None:
            return None
        rule = self._rules[index]
        self._rules[index] = rule.model_copy(update={"active": not rule.active})
        self._persist()
        return self._rules[index].model_copy()

    def remove(self, rule_id: str) -> bool:
        index = self._index_of(rule_id)
        if index is None:
            return False
        del self._rules[index]
        self._persist()
        return True

    def record_triggers(self, fired_at: Dict[str, datetime]) -> None:
        """Stamp ``last_triggered_at`` on the given rule ids (one save)."""
        changed = False
        for i, rule in enumerate(self._rules):
            when = fired_at.get(rule.id)
            if when is not None:
                self._rules[i] = rule.model_copy(update={"last_triggered_at": when})
                changed = True
        if changed:
            self._persist()

    # --------------- helpers ---------------

    def _index_of(self, rule_id: str) -> Optional[int]:
        for i, rule in enumerate(self._rules):
            if rule.id == rule_id:
                return i
        return None

    def _one_per_key(self, loaded: Iterable[AlarmRule]) -> List[AlarmRule]:
        """Drop unknown keys; when a key repeats, the last rule wins."""
        by_key: Dict[str, AlarmRule] = {}
        for rule in loaded:
            if self._known_keys is not None and rule.product_key not in self._known_keys:
                logger.warning("Dropping stored rule %s for unknown product %r", rule.id, rule.product_key)
                continue
            if rule.product_key in by_key:
                logger.warning("Duplicate stored rules for %s; keeping %s over %s",
                               rule.product_key, rule.id, by_key[rule.product_key].id)
            by_key[rule.product_key] = rule
        return list(by_key.values())

    def _persist(self) -> None:
        self._storage.save_rules(list(self._rules))


class CrossingDetector:
    """
    Edge-triggered threshold evaluation.

    A rule fires only when the previous and current samples straddle one of
    its thresholds, so a price parked beyond a threshold fires once and
    re-arms only after it has come back.
    """

    @staticmethod
    def check(rule: AlarmRule, quote: ProductQuote) -> Optional[Tuple[str, float]]:
        prev = quote.previous_value
        cur = quote.current_value
        if prev is None:
            return None

        upper = rule.upper_threshold
        if upper is not None and prev < upper and cur >= upper:
            return "up", upper

        lower = rule.lower_threshold
        if lower is not None and prev > lower and cur <= lower:
            return "down", lower

        return None

    def detect(
        self,
        quotes: Dict[str, ProductQuote],
        rules: List[AlarmRule],
        now: Optional[datetime] = None,
    ) -> List[Tuple[AlarmRule, CrossingEvent]]:
        """
        Evaluate every active rule against this tick's quotes and return
        the newly-fired (rule, event) pairs, at most one per rule.
        """
        now = now or datetime.now(timezone.utc)
        fired: List[Tuple[AlarmRule, CrossingEvent]] = []

        for rule in rules:
            if not rule.active:
                continue

            quote = quotes.get(rule.product_key)
            if quote is None:
                continue

            hit = self.check(rule, quote)
            if hit is None:
                continue

            direction, threshold = hit
            event = CrossingEvent(
                rule_id=rule.id,
                product_key=rule.product_key,
                display_name=quote.display_name,
                direction=direction,
                threshold=threshold,
                previous_value=quote.previous_value,
                current_value=quote.current_value,
                triggered_at=now,
            )
            logger.info("Alarm %s: %s crossed %s %.4f (%.4f -> %.4f)",
                        rule.id, rule.product_key, direction, threshold,
                        event.previous_value, event.current_value)
            fired.append((rule, event))

        return fired
