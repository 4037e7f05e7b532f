import io
import itertools
import logging
import wave
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Protocol, Tuple

import numpy as np

from priceboard.models import (
    AlarmChannel,
    AlarmLogEntry,
    AlarmRule,
    CrossingEvent,
    Direction,
    FlashState,
    PopupRequest,
)
from priceboard.popup_service import PopupScheduler
from priceboard.scheduler import TimerScheduler

logger = logging.getLogger(__name__)

DIRECTION_ICONS = {"up": "📈", "down": "📉"}

# (frequency Hz, duration s): C5, E5, G5
RISING_NOTES: Tuple[Tuple[float, float], ...] = ((523.0, 0.10), (659.0, 0.15), (784.0, 0.25))
FALLING_NOTES: Tuple[Tuple[float, float], ...] = ((784.0, 0.10), (659.0, 0.15), (523.0, 0.25))


class PushNotifier(Protocol):
    def is_permission_granted(self) -> bool: ...

    def push(self, title: str, body: str) -> None: ...


AudioSink = Callable[[Direction, bytes], None]


class AlarmLog:
    """Most-recent-first record of fired alarms, capped at ``capacity``."""

    def __init__(self, capacity: int = 30):
        self.capacity = capacity
        self._entries: Deque[AlarmLogEntry] = deque(maxlen=capacity)

    def append(self, entry: AlarmLogEntry) -> None:
        self._entries.appendleft(entry)

    def entries(self) -> List[AlarmLogEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class FlashBoard:
    """
    Which product rows are flashing, and in which direction.

    One flash per product: a new flash replaces the old one and restarts
    its auto-clear timer.
    """

    def __init__(
        self,
        scheduler: TimerScheduler,
        duration: float = 1.2,
        on_change: Optional[Callable[[str, Optional[FlashState]], None]] = None,
    ):
        self._scheduler = scheduler
        self.duration = duration
        self._on_change = on_change
        self._flashes: Dict[str, FlashState] = {}

    def flash(self, product_key: str, direction: Direction) -> None:
        state = FlashState(product_key=product_key, direction=direction)
        self._flashes[product_key] = state
        self._scheduler.call_later(f"flash:{product_key}", self.duration, lambda: self._clear(product_key))
        self._changed(product_key, state)

    def get(self, product_key: str) -> Optional[FlashState]:
        return self._flashes.get(product_key)

    def active(self) -> List[FlashState]:
        return list(self._flashes.values())

    def _clear(self, product_key: str) -> None:
        if self._flashes.pop(product_key, None) is not None:
            self._changed(product_key, None)

    def _changed(self, product_key: str, state: Optional[FlashState]) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(product_key, state)
        except Exception:
            logger.exception("Flash hook failed for %s", product_key)


class ToneSynthesizer:
    """Renders the three-note alarm cue as a 16-bit mono WAV."""

    def __init__(self, sample_rate: int = 22050, gain: float = 0.3, floor: float = 0.001):
        self.sample_rate = sample_rate
        self.gain = gain
        self.floor = floor

    @staticmethod
    def notes(direction: Direction) -> Tuple[Tuple[float, float], ...]:
        return RISING_NOTES if direction == "up" else FALLING_NOTES

    def samples(self, direction: Direction) -> np.ndarray:
        chunks = []
        for frequency, duration in self.notes(direction):
            t = np.arange(int(self.sample_rate * duration)) / self.sample_rate
            # exponential decay from gain down to floor over the note
            envelope = self.gain * np.power(self.floor / self.gain, t / duration)
            chunks.append(np.sin(2 * np.pi * frequency * t) * envelope)
        return np.concatenate(chunks)

    def render(self, direction: Direction) -> bytes:
        pcm = (np.clip(self.samples(direction), -1.0, 1.0) * 32767).astype("<i2")
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(2)
            wav.setframerate(self.sample_rate)
            wav.writeframes(pcm.tobytes())
        return buf.getvalue()


def push_message(event: CrossingEvent, currency: str = "TRY") -> Tuple[str, str]:
    side = "upper" if event.direction == "up" else "lower"
    title = (f"{DIRECTION_ICONS[event.direction]} {event.display_name} crossed {side} "
             f"threshold: {event.threshold:,.2f} {currency}")
    return title, f"{event.display_name} price alarm"


class NotificationDispatcher:
    """
    Fans a crossing out to the channels selected on its rule.

    The alarm log is always written first. Each channel runs in isolation:
    an exception in one is logged and the remaining channels still run.
    """

    def __init__(
        self,
        log: AlarmLog,
        flashes: FlashBoard,
        popups: PopupScheduler,
        synthesizer: Optional[ToneSynthesizer] = None,
        audio_sink: Optional[AudioSink] = None,
        push: Optional[PushNotifier] = None,
        currency: str = "TRY",
    ):
        self.log = log
        self.flashes = flashes
        self.popups = popups
        self.synthesizer = synthesizer or ToneSynthesizer()
        self.audio_sink = audio_sink
        self.push = push
        self.currency = currency
        self._popup_ids = itertools.count(1)
        self._handlers: Dict[AlarmChannel, Callable[[CrossingEvent], None]] = {
            AlarmChannel.FLASH: self._flash,
            AlarmChannel.AUDIO: self._audio,
            AlarmChannel.POPUP: self._popup,
            AlarmChannel.PUSH: self._push,
        }

    def dispatch(self, event: CrossingEvent, rule: AlarmRule) -> None:
        self.log.append(AlarmLogEntry.from_event(event))

        for channel in rule.channels:
            try:
                self._handlers[channel](event)
            except Exception:
                logger.exception("%s channel failed for rule %s", channel.value, rule.id)

    # --------------- channels ---------------

    def _flash(self, event: CrossingEvent) -> None:
        self.flashes.flash(event.product_key, event.direction)

    def _audio(self, event: CrossingEvent) -> None:
        if self.audio_sink is None:
            logger.debug("No audio output attached; skipping sound for %s", event.product_key)
            return
        try:
            self.audio_sink(event.direction, self.synthesizer.render(event.direction))
        except Exception as e:
            logger.warning("Could not play alarm sound: %s", e)

    def _popup(self, event: CrossingEvent) -> None:
        self.popups.enqueue(PopupRequest(
            id=next(self._popup_ids),
            display_name=event.display_name,
            icon=DIRECTION_ICONS[event.direction],
            direction=event.direction,
            threshold=event.threshold,
            previous_value=event.previous_value,
            current_value=event.current_value,
        ))

    def _push(self, event: CrossingEvent) -> None:
        if self.push is None or not self.push.is_permission_granted():
            return
        title, body = push_message(event, self.currency)
        self.push.push(title, body)
