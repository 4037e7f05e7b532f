from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


Direction = Literal["up", "down"]


class FxQuoteMode(str, Enum):
    """How the numbers in ``QuoteSnapshot.fx_rates`` are quoted."""

    LOCAL_PER_UNIT = "local_per_unit"    # 1 USD = 30 local
    UNITS_PER_LOCAL = "units_per_local"  # 1 local = 0.0333 USD


class AlarmChannel(str, Enum):
    FLASH = "visual-flash"
    AUDIO = "audio"
    POPUP = "popup"
    PUSH = "push"


ALL_CHANNELS: List[AlarmChannel] = [
    AlarmChannel.PUSH,
    AlarmChannel.AUDIO,
    AlarmChannel.POPUP,
    AlarmChannel.FLASH,
]


class SpotQuote(BaseModel):
    """A metal spot price per troy ounce, tagged with its settlement currency."""
    price: Optional[float] = None
    currency: str = "USD"


class QuoteSnapshot(BaseModel):
    fx_rates: Dict[str, float] = Field(default_factory=dict)
    fx_mode: FxQuoteMode = FxQuoteMode.LOCAL_PER_UNIT
    gold: Optional[SpotQuote] = None
    silver: Optional[SpotQuote] = None
    fetched_at: Optional[datetime] = None


class ProductQuote(BaseModel):
    key: str
    display_name: str
    category: str
    current_value: float
    previous_value: Optional[float] = None
    percent_change: float = 0.0


class PriceUpdateMessage(BaseModel):
    type: str = "price_update"
    data: List[ProductQuote]


class RuleDraft(BaseModel):
    """
    Operator input for creating (or replacing) the rule of one product.
    Validation happens in the registry so a bad draft never mutates state.
    """
    product_key: str
    upper_threshold: Optional[float] = None
    lower_threshold: Optional[float] = None
    channels: List[AlarmChannel] = Field(default_factory=lambda: list(ALL_CHANNELS))
    active: bool = True


class AlarmRule(BaseModel):
    """
    A single threshold rule such as "GOLD_24K above 3100 or below 2900".
    """
    id: str
    product_key: str
    upper_threshold: Optional[float] = None
    lower_threshold: Optional[float] = None
    channels: List[AlarmChannel]
    active: bool = True
    created_at: datetime
    last_triggered_at: Optional[datetime] = None


class CrossingEvent(BaseModel):
    """
    A rule's product moving across one of its thresholds between two ticks.
    """
    rule_id: str
    product_key: str
    display_name: str
    direction: Direction
    threshold: float
    previous_value: float
    current_value: float
    triggered_at: datetime


class AlarmLogEntry(BaseModel):
    rule_id: str
    product_key: str
    display_name: str
    direction: Direction
    threshold: float
    previous_value: float
    current_value: float
    time: datetime

    @classmethod
    def from_event(cls, event: CrossingEvent) -> "AlarmLogEntry":
        return cls(
            rule_id=event.rule_id,
            product_key=event.product_key,
            display_name=event.display_name,
            direction=event.direction,
            threshold=event.threshold,
            previous_value=event.previous_value,
            current_value=event.current_value,
            time=event.triggered_at,
        )


class PopupRequest(BaseModel):
    id: int
    display_name: str
    icon: str
    direction: Direction
    threshold: float
    previous_value: float
    current_value: float


class FlashState(BaseModel):
    product_key: str
    direction: Direction


class EngineStats(BaseModel):
    active_rules: int
    total_triggered: int
    tracked_products: int
    last_update: Optional[datetime] = None
