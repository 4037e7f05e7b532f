import asyncio
import base64
import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Set

from fastapi import Body, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request

from priceboard.alert_service import RuleStorage, RuleValidationError
from priceboard.config import Settings
from priceboard.engine import PriceAlertEngine
from priceboard.models import (
    AlarmLogEntry,
    AlarmRule,
    EngineStats,
    FlashState,
    PopupRequest,
    PriceUpdateMessage,
    ProductQuote,
    RuleDraft,
)
from priceboard.notification_service import ToneSynthesizer
from priceboard.pricing_service import CATALOGUE
from priceboard.push_service import WebexPushNotifier
from priceboard.quotes_service import QuoteProvider
from priceboard.rules_store import RuleStore
from priceboard.scheduler import AsyncioTimerScheduler, TickLoop, TimerScheduler

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


class ConnectionManager:
    """
    Tracks display/admin websocket clients and relays engine messages to
    them. Engine hooks are synchronous, so messages go through a bounded
    queue that ``run_broadcaster`` drains on the event loop.
    """

    def __init__(self, max_pending: int = 1000):
        self.active: Set[WebSocket] = set()
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=max_pending)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active.add(websocket)
        logger.info("ws client connected, total=%d", len(self.active))

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active:
            self.active.remove(websocket)
            logger.info("ws client disconnected, total=%d", len(self.active))

    def publish(self, payload: dict) -> None:
        try:
            self._outbox.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("ws outbox full; dropping %s message", payload.get("type"))

    async def broadcast_json(self, payload):
        disconnected: List[WebSocket] = []
        for ws in list(self.active):
            try:
                await ws.send_json(payload)
            except (WebSocketDisconnect, RuntimeError, OSError):
                disconnected.append(ws)
        for ws in disconnected:
            self.disconnect(ws)

    async def run_broadcaster(self):
        while True:
            payload = await self._outbox.get()
            await self.broadcast_json(payload)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[RuleStorage] = None,
    provider: Optional[QuoteProvider] = None,
    push: Optional[WebexPushNotifier] = None,
    scheduler: Optional[TimerScheduler] = None,
    start_ticks: bool = True,
) -> FastAPI:
    """
    Build the price board backend. Collaborators default to the real ones
    configured from the environment; tests pass their own.

    Run with: ``uvicorn priceboard.main:create_app --factory``
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    store = store if store is not None else RuleStore.from_url(settings.redis_url, key=settings.rules_key)
    provider = provider or QuoteProvider.from_settings(settings)
    push = push or WebexPushNotifier.from_settings(settings)
    timers = scheduler or AsyncioTimerScheduler()
    manager = ConnectionManager()

    def play_on_clients(direction, wav: bytes) -> None:
        manager.publish({
            "type": "audio",
            "direction": direction,
            "notes": [{"frequency": f, "duration": d} for f, d in ToneSynthesizer.notes(direction)],
            "wav": base64.b64encode(wav).decode("ascii"),
        })

    engine = PriceAlertEngine(
        storage=store,
        scheduler=timers,
        settings=settings,
        push=push,
        audio_sink=play_on_clients,
        publish=manager.publish,
    )

    async def fetch_snapshot():
        return await asyncio.to_thread(provider.get_snapshot)

    ticks = TickLoop(fetch_snapshot, engine.process_snapshot, settings.tick_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        broadcaster = asyncio.create_task(manager.run_broadcaster())
        if start_ticks:
            ticks.start()
        try:
            yield
        finally:
            await ticks.stop()
            broadcaster.cancel()
            if isinstance(timers, AsyncioTimerScheduler):
                timers.cancel_all()

    app = FastAPI(title="Price Board Alarm Backend", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.ticks = ticks
    app.state.connections = manager

    # Allow the display board and admin panel to talk to the API.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------- request logging --------
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.debug("%s %s -> %s", request.method, request.url.path, response.status_code)
        return response

    # -------- prices --------
    @app.get("/health")
    async def health():
        return {"status": "ok", "durable_rules": getattr(store, "is_durable", False)}

    @app.get("/api/catalogue")
    async def get_catalogue():
        return [{"key": e.key, "display_name": e.display_name, "category": e.category} for e in CATALOGUE]

    @app.get("/api/quotes", response_model=List[ProductQuote])
    async def get_quotes():
        return engine.quotes()

    @app.get("/api/stats", response_model=EngineStats)
    async def get_stats():
        return engine.stats()

    # -------- alarm rules --------
    @app.get("/alerts/rules", response_model=List[AlarmRule])
    async def get_alarm_rules():
        return engine.rules()

    @app.post("/alerts/rules", response_model=AlarmRule)
    async def upsert_alarm_rule(draft: RuleDraft = Body(...)):
        try:
            return engine.upsert_rule(draft)
        except RuleValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))

    @app.post("/alerts/rules/{rule_id}/toggle", response_model=AlarmRule)
    async def toggle_alarm_rule(rule_id: str):
        rule = engine.toggle_rule(rule_id)
        if rule is None:
            raise HTTPException(status_code=404, detail=f"rule {rule_id} not found")
        return rule

    @app.delete("/alerts/rules/{rule_id}")
    async def remove_alarm_rule(rule_id: str):
        return {"removed": engine.remove_rule(rule_id)}

    # -------- alarm log, popups, flashes --------
    @app.get("/alerts/log", response_model=List[AlarmLogEntry])
    async def get_alarm_log():
        return engine.log_entries()

    @app.delete("/alerts/log")
    async def clear_alarm_log():
        engine.clear_log()
        return {"cleared": True}

    @app.get("/alerts/popup", response_model=Optional[PopupRequest])
    async def get_current_popup():
        return engine.current_popup()

    @app.post("/alerts/popup/dismiss")
    async def dismiss_popup():
        return {"dismissed": engine.dismiss_popup()}

    @app.get("/alerts/flashes", response_model=List[FlashState])
    async def get_flashes():
        return engine.flashes()

    @app.post("/alerts/push/permission")
    async def request_push_permission():
        permission = await asyncio.to_thread(push.request_permission)
        return {"permission": permission}

    # -------- websocket --------
    @app.websocket("/ws/prices")
    async def websocket_prices(websocket: WebSocket):
        await manager.connect(websocket)

        # On connect, send the current board immediately
        await websocket.send_json(PriceUpdateMessage(data=engine.quotes()).model_dump(mode="json"))
        popup = engine.current_popup()
        if popup is not None:
            await websocket.send_json({"type": "popup_shown", "popup": popup.model_dump(mode="json")})

        try:
            while True:
                message = await websocket.receive_json()
                if isinstance(message, dict) and message.get("action") == "dismiss_popup":
                    engine.dismiss_popup()
        except WebSocketDisconnect:
            manager.disconnect(websocket)
        except ValueError as e:
            logger.warning("Bad message on ws/prices: %s", e)
            manager.disconnect(websocket)
            await websocket.close(code=1003)

    return app
