"""End-to-end tests for the tick pipeline."""

import pytest

from priceboard.config import Settings
from priceboard.engine import PriceAlertEngine, TickInProgressError
from priceboard.models import AlarmChannel, RuleDraft
from tests.conftest import MemoryRuleStorage, make_snapshot

T = 35.0
L = 28.0


def run(engine, clock, usd_values):
    """Feed one tick per USD value and return the events fired on each tick."""
    return [engine.process_snapshot(make_snapshot(usd=v), now=clock()) for v in usd_values]


class TestEdgeTriggering:

    def test_no_duplicate_fire_while_above(self, engine, clock):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T))
        fired = run(engine, clock, [T - 1, T + 1, T + 2, T + 1.5, T + 3, T + 0.1])
        assert [len(f) for f in fired] == [0, 1, 0, 0, 0, 0]

    def test_rearm_after_dip(self, engine, clock):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T))
        fired = run(engine, clock, [T - 1, T + 1, T - 1, T + 1])
        assert [len(f) for f in fired] == [0, 1, 0, 1]
        assert all(e.direction == "up" for f in fired for e in f)

    def test_lower_threshold_symmetry(self, engine, clock):
        engine.upsert_rule(RuleDraft(product_key="USD", lower_threshold=L))
        fired = run(engine, clock, [L + 1, L - 1])
        assert [len(f) for f in fired] == [0, 1]
        event = fired[1][0]
        assert event.direction == "down"
        assert event.threshold == L
        assert event.previous_value == L + 1
        assert event.current_value == L - 1

    def test_lower_no_duplicate_while_below(self, engine, clock):
        engine.upsert_rule(RuleDraft(product_key="USD", lower_threshold=L))
        fired = run(engine, clock, [L + 1, L - 1, L - 2, L - 1, L + 1, L - 1])
        assert [len(f) for f in fired] == [0, 1, 0, 0, 0, 1]

    @pytest.mark.parametrize("first_value", [T + 100, L - 100, 0.0, T])
    def test_first_tick_silence(self, engine, clock, first_value):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T, lower_threshold=L))
        assert run(engine, clock, [first_value]) == [[]]
        assert engine.log_entries() == []

    def test_rule_added_while_above_does_not_fire(self, engine, clock):
        run(engine, clock, [T + 1])
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T))
        assert run(engine, clock, [T + 2]) == [[]]

    def test_inactive_rule_never_fires(self, engine, clock):
        rule = engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T))
        engine.toggle_rule(rule.id)
        fired = run(engine, clock, [T - 1, T + 1])
        assert fired == [[], []]

    def test_both_bounds_in_one_rule(self, engine, clock):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T, lower_threshold=L))
        fired = run(engine, clock, [30, 36, 27, 29, 35])
        assert [[e.direction for e in f] for f in fired] == [[], ["up"], ["down"], [], ["up"]]


class TestTickSideEffects:

    def test_last_triggered_at_persisted(self, engine, clock, storage):
        rule = engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T))
        engine.process_snapshot(make_snapshot(usd=T - 1), now=clock())
        fired_at = clock()
        engine.process_snapshot(make_snapshot(usd=T + 1), now=fired_at)
        assert engine.registry.get(rule.id).last_triggered_at == fired_at
        assert storage.saved[0].last_triggered_at == fired_at

    def test_log_and_stats(self, engine, clock):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T, channels=[AlarmChannel.FLASH]))
        run(engine, clock, [T - 1, T + 1, T - 1, T + 1])
        stats = engine.stats()
        assert stats.total_triggered == 2
        assert stats.active_rules == 1
        assert stats.tracked_products == 15
        assert stats.last_update is not None
        assert len(engine.log_entries()) == 2

    def test_log_cap_over_many_crossings(self, engine, clock):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T, channels=[AlarmChannel.FLASH]))
        values = [T - 1]
        for _ in range(35):
            values += [T + 1, T - 1]
        run(engine, clock, values)
        assert engine.stats().total_triggered == 35
        assert len(engine.log_entries()) == 30

    def test_clear_log(self, engine, clock):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T))
        run(engine, clock, [T - 1, T + 1])
        engine.clear_log()
        assert engine.log_entries() == []
        assert engine.stats().total_triggered == 1

    def test_channels_fan_out(self, engine, clock, audio_calls, push):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T))
        run(engine, clock, [T - 1, T + 1])
        assert [f.product_key for f in engine.flashes()] == ["USD"]
        assert engine.current_popup().display_name == "US Dollar"
        assert audio_calls[0][0] == "up"
        assert len(push.sent) == 1

    def test_popup_dismiss_and_timers(self, engine, clock, scheduler):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T, channels=[AlarmChannel.POPUP]))
        engine.upsert_rule(RuleDraft(product_key="EUR", upper_threshold=40, channels=[AlarmChannel.POPUP]))
        engine.process_snapshot(make_snapshot(usd=T - 1, eur=39), now=clock())
        engine.process_snapshot(make_snapshot(usd=T + 1, eur=41), now=clock())

        assert engine.current_popup().display_name == "US Dollar"
        assert engine.dismiss_popup() is True
        assert engine.current_popup().display_name == "Euro"
        scheduler.advance(8.0)
        assert engine.current_popup() is None
        assert engine.dismiss_popup() is False

    def test_flash_clears_after_duration(self, engine, clock, scheduler):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T, channels=[AlarmChannel.FLASH]))
        run(engine, clock, [T - 1, T + 1])
        scheduler.advance(1.3)
        assert engine.flashes() == []

    def test_published_messages(self, engine, clock, published):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T,
                                     channels=[AlarmChannel.FLASH, AlarmChannel.POPUP]))
        run(engine, clock, [T - 1, T + 1])
        types = [m["type"] for m in published]
        assert types.count("price_update") == 2
        assert "alarm" in types
        assert "flash" in types
        assert "popup_shown" in types
        alarm = next(m for m in published if m["type"] == "alarm")
        assert alarm["event"]["product_key"] == "USD"

    def test_publish_failure_does_not_break_tick(self, storage, scheduler, clock):
        def broken(message):
            raise RuntimeError("socket closed")

        engine = PriceAlertEngine(storage, scheduler, Settings(), publish=broken)
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T, channels=[AlarmChannel.FLASH]))
        fired = run(engine, clock, [T - 1, T + 1])
        assert len(fired[1]) == 1

    def test_storage_failure_still_logs_and_notifies(self, scheduler, clock, push):
        class FlakyStorage(MemoryRuleStorage):
            fail = False

            def save_rules(self, rules):
                if self.fail:
                    raise ConnectionError("redis went away")
                super().save_rules(rules)

        storage = FlakyStorage()
        engine = PriceAlertEngine(storage, scheduler, Settings(), push=push)
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T))
        engine.process_snapshot(make_snapshot(usd=T - 1), now=clock())

        storage.fail = True
        fired = engine.process_snapshot(make_snapshot(usd=T + 1), now=clock())
        assert len(fired) == 1
        assert len(engine.log_entries()) == 1
        assert engine.current_popup() is not None
        assert len(push.sent) == 1
        assert engine.stats().total_triggered == 1

        # the edge is consumed; no duplicate on the next tick
        assert engine.process_snapshot(make_snapshot(usd=T + 2), now=clock()) == []


class TestTickGuards:

    def test_missing_snapshot_is_skipped(self, engine, clock):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T))
        engine.process_snapshot(make_snapshot(usd=T - 1), now=clock())
        assert engine.process_snapshot(None) == []
        usd = next(q for q in engine.quotes() if q.key == "USD")
        assert usd.current_value == T - 1
        # the crossing is still seen against the last real tick
        assert len(engine.process_snapshot(make_snapshot(usd=T + 1), now=clock())) == 1

    def test_partial_snapshot_zeroes_only_affected_products(self, engine, clock):
        engine.process_snapshot(make_snapshot(), now=clock())
        partial = make_snapshot()
        partial.gold = None
        engine.process_snapshot(partial, now=clock())
        quotes = {q.key: q for q in engine.quotes()}
        assert len(quotes) == 15
        assert quotes["GOLD_24K"].current_value == 0.0
        assert quotes["USD"].current_value == 30.0

    def test_reentrant_tick_rejected(self, storage, scheduler, clock):
        holder = {}

        def publish(message):
            if message["type"] == "price_update" and "error" not in holder:
                try:
                    holder["engine"].process_snapshot(make_snapshot())
                except TickInProgressError as e:
                    holder["error"] = e

        engine = PriceAlertEngine(storage, scheduler, Settings(), publish=publish)
        holder["engine"] = engine
        engine.process_snapshot(make_snapshot(), now=clock())
        assert isinstance(holder["error"], TickInProgressError)
        # the guard is released once the tick returns
        engine.process_snapshot(make_snapshot(), now=clock())

    def test_rules_reloaded_from_storage(self, scheduler, clock):
        storage = MemoryRuleStorage()
        first = PriceAlertEngine(storage, scheduler, Settings())
        first.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T))

        restarted = PriceAlertEngine(MemoryRuleStorage(storage.saved), scheduler, Settings())
        assert [r.product_key for r in restarted.rules()] == ["USD"]
        fired = run(restarted, clock, [T - 1, T + 1])
        assert len(fired[1]) == 1

    def test_upsert_replaces_and_resets_trigger(self, engine, clock):
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T))
        run(engine, clock, [T - 1, T + 1])
        assert engine.rules()[0].last_triggered_at is not None
        engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T + 5))
        rules = engine.rules()
        assert len(rules) == 1
        assert rules[0].last_triggered_at is None

    def test_remove_rule(self, engine):
        rule = engine.upsert_rule(RuleDraft(product_key="USD", upper_threshold=T))
        assert engine.remove_rule(rule.id) is True
        assert engine.remove_rule(rule.id) is False
        assert engine.rules() == []
