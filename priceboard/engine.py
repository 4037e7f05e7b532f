import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from priceboard.alert_service import AlarmRegistry, CrossingDetector, RuleStorage
from priceboard.config import Settings
from priceboard.models import (
    AlarmLogEntry,
    AlarmRule,
    CrossingEvent,
    EngineStats,
    FlashState,
    PopupRequest,
    PriceUpdateMessage,
    ProductQuote,
    QuoteSnapshot,
    RuleDraft,
)
from priceboard.notification_service import (
    AlarmLog,
    AudioSink,
    FlashBoard,
    NotificationDispatcher,
    PushNotifier,
)
from priceboard.popup_service import PopupScheduler
from priceboard.pricing_service import CATALOGUE_BY_KEY, PriceTracker, derive_prices
from priceboard.scheduler import TimerScheduler

logger = logging.getLogger(__name__)

Publisher = Callable[[dict], None]


class TickInProgressError(RuntimeError):
    """Raised when a tick is started while another is still running."""


class PriceAlertEngine:
    """
    Owns all alerting state: tracker, rule registry, alarm log, flash board
    and popup scheduler.

    Storage, timers, push delivery, audio output and the UI event feed are
    injected so the engine runs the same under FastAPI and in tests.
    """

    def __init__(
        self,
        storage: RuleStorage,
        scheduler: TimerScheduler,
        settings: Optional[Settings] = None,
        push: Optional[PushNotifier] = None,
        audio_sink: Optional[AudioSink] = None,
        publish: Optional[Publisher] = None,
    ):
        self.settings = settings or Settings()
        self._publish_hook = publish

        self.tracker = PriceTracker()
        self.registry = AlarmRegistry(storage, known_keys=CATALOGUE_BY_KEY)
        self.detector = CrossingDetector()
        self.log = AlarmLog(self.settings.alarm_log_capacity)
        self.flash_board = FlashBoard(
            scheduler,
            duration=self.settings.flash_duration_seconds,
            on_change=self._on_flash,
        )
        self.popups = PopupScheduler(
            scheduler,
            duration=self.settings.popup_duration_seconds,
            on_show=lambda popup: self._publish({"type": "popup_shown", "popup": popup.model_dump(mode="json")}),
            on_hide=lambda popup: self._publish({"type": "popup_hidden", "popup_id": popup.id}),
        )
        self.dispatcher = NotificationDispatcher(
            log=self.log,
            flashes=self.flash_board,
            popups=self.popups,
            audio_sink=audio_sink,
            push=push,
            currency=self.settings.local_currency,
        )

        self.total_triggered = 0
        self.last_update: Optional[datetime] = None
        self._in_tick = False

    # --------------- tick pipeline ---------------

    def process_snapshot(self, snapshot: Optional[QuoteSnapshot], now: Optional[datetime] = None) -> List[CrossingEvent]:
        """
        Run one tick: derive prices, track changes, detect crossings and
        dispatch them. Returns the crossing events fired this tick.

        A missing snapshot is a skipped tick; prices stay as they were.
        """
        if self._in_tick:
            raise TickInProgressError("previous tick has not finished")
        if snapshot is None:
            logger.warning("No quote snapshot available; skipping tick")
            return []

        self._in_tick = True
        try:
            now = now or datetime.now(timezone.utc)
            values = derive_prices(snapshot, self.settings.local_currency)
            quotes = self.tracker.update(values)
            self.last_update = now
            self._publish(PriceUpdateMessage(data=list(quotes.values())).model_dump(mode="json"))

            fired = self.detector.detect(quotes, self.registry.all(), now)
            for rule, event in fired:
                self.total_triggered += 1
                self.dispatcher.dispatch(event, rule)
                self._publish({"type": "alarm", "event": event.model_dump(mode="json")})

            if fired:
                try:
                    self.registry.record_triggers({rule.id: now for rule, _ in fired})
                except Exception:
                    logger.exception("Could not save trigger times for %d rule(s)", len(fired))

            return [event for _, event in fired]
        finally:
            self._in_tick = False

    # --------------- read-only views ---------------

    def quotes(self) -> List[ProductQuote]:
        return self.tracker.quotes()

    def rules(self) -> List[AlarmRule]:
        return self.registry.all()

    def log_entries(self) -> List[AlarmLogEntry]:
        return self.log.entries()

    def current_popup(self) -> Optional[PopupRequest]:
        return self.popups.current

    def flashes(self) -> List[FlashState]:
        return self.flash_board.active()

    def stats(self) -> EngineStats:
        return EngineStats(
            active_rules=self.registry.active_count(),
            total_triggered=self.total_triggered,
            tracked_products=len(self.tracker.quotes()),
            last_update=self.last_update,
        )

    # --------------- operator actions ---------------

    def upsert_rule(self, draft: RuleDraft) -> AlarmRule:
        return self.registry.upsert(draft)

    def toggle_rule(self, rule_id: str) -> Optional[AlarmRule]:
        return self.registry.toggle_active(rule_id)

    def remove_rule(self, rule_id: str) -> bool:
        return self.registry.remove(rule_id)

    def clear_log(self) -> None:
        self.log.clear()

    def dismiss_popup(self) -> bool:
        return self.popups.dismiss()

    # --------------- UI feed ---------------

    def _on_flash(self, product_key: str, state: Optional[FlashState]) -> None:
        if state is None:
            self._publish({"type": "flash_cleared", "product_key": product_key})
        else:
            self._publish({"type": "flash", **state.model_dump(mode="json")})

    def _publish(self, message: dict) -> None:
        if self._publish_hook is None:
            return
        try:
            self._publish_hook(message)
        except Exception:
            logger.exception("Publishing %s message failed", message.get("type"))
