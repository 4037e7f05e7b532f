import logging
from collections import deque
from typing import Callable, Deque, List, Optional

from priceboard.models import PopupRequest
from priceboard.scheduler import TimerScheduler

logger = logging.getLogger(__name__)

POPUP_TIMER_KEY = "popup"


class PopupScheduler:
    """
    Shows queued popups one at a time.

    Idle -> Showing when something is queued; Showing -> Idle on the
    auto-dismiss timer or an explicit ``dismiss()``, after which the next
    queued popup (FIFO) is shown straight away.
    """

    def __init__(
        self,
        scheduler: TimerScheduler,
        duration: float = 8.0,
        on_show: Optional[Callable[[PopupRequest], None]] = None,
        on_hide: Optional[Callable[[PopupRequest], None]] = None,
    ):
        self._scheduler = scheduler
        self.duration = duration
        self._on_show = on_show
        self._on_hide = on_hide
        self._queue: Deque[PopupRequest] = deque()
        self._current: Optional[PopupRequest] = None

    @property
    def current(self) -> Optional[PopupRequest]:
        return self._current

    @property
    def is_showing(self) -> bool:
        return self._current is not None

    def queued(self) -> List[PopupRequest]:
        return list(self._queue)

    def enqueue(self, request: PopupRequest) -> None:
        self._queue.append(request)
        self._advance()

    def dismiss(self) -> bool:
        """Close the visible popup. Returns False when nothing was showing."""
        if self._current is None:
            return False
        self._scheduler.cancel(POPUP_TIMER_KEY)
        self._close()
        return True

    # --------------- state machine ---------------

    def _advance(self) -> None:
        if self._current is not None or not self._queue:
            return
        popup = self._queue.popleft()
        self._current = popup
        self._scheduler.call_later(POPUP_TIMER_KEY, self.duration, lambda: self._expire(popup.id))
        logger.debug("Showing popup %d (%s), %d queued", popup.id, popup.display_name, len(self._queue))
        self._notify(self._on_show, popup)

    def _expire(self, popup_id: int) -> None:
        if self._current is None or self._current.id != popup_id:
            return
        self._close()

    def _close(self) -> None:
        popup = self._current
        self._current = None
        if popup is not None:
            self._notify(self._on_hide, popup)
        self._advance()

    @staticmethod
    def _notify(hook: Optional[Callable[[PopupRequest], None]], popup: PopupRequest) -> None:
        if hook is None:
            return
        try:
            hook(popup)
        except Exception:
            logger.exception("Popup hook failed for popup %d", popup.id)
