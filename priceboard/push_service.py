import asyncio
import json
import logging
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

GRANTED = "granted"
DENIED = "denied"
DEFAULT = "default"


class WebexPushNotifier:
    """
    Delivers push notifications to a WebEx space using a bot token.

    Pushes are permission-gated: nothing is sent until the operator has asked
    for permission via ``request_permission()`` and the notifier is configured
    (WEBEX_BOT_TOKEN and WEBEX_ROOM_ID). Delivery is best-effort; failures are
    logged and never raised.
    """

    url = "https://webexapis.com/v1/messages"

    def __init__(self, bot_token: Optional[str], room_id: Optional[str], timeout: float = 5.0):
        self.bot_token = bot_token
        self.room_id = room_id
        self.timeout = timeout
        self.permission = DEFAULT

        if not self.is_configured():
            logger.warning("WebEx not configured; push notifications will be unavailable.")

    @classmethod
    def from_settings(cls, settings) -> "WebexPushNotifier":
        return cls(bot_token=settings.webex_bot_token, room_id=settings.webex_room_id)

    # --------------- permission gate ---------------

    def is_configured(self) -> bool:
        return bool(self.bot_token and self.room_id)

    def is_permission_granted(self) -> bool:
        return self.permission == GRANTED

    def request_permission(self) -> str:
        """Grant or deny pushes. The welcome message goes out only on first grant."""
        was_granted = self.is_permission_granted()
        self.permission = GRANTED if self.is_configured() else DENIED
        if self.permission == GRANTED and not was_granted:
            self.notify(
                "Price alarm system active!",
                "Notifications enabled. You will be told here whenever a price crosses one of your thresholds.",
            )
        elif self.permission == DENIED:
            logger.warning("Push permission denied: WebEx bot token / room id missing")
        return self.permission

    # --------------- public API ---------------

    def push(self, title: str, body: str) -> None:
        """
        Fire-and-forget delivery. Inside a running event loop the HTTP call
        goes to the default executor so a tick never waits on the network.
        """
        if not self.is_permission_granted():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.notify(title, body)
            return
        loop.run_in_executor(None, self.notify, title, body)

    def notify(self, title: str, body: str) -> bool:
        """
        Post a message into the configured WebEx room. Returns True on success.
        """
        if not self.is_permission_granted():
            return False

        headers = {
            "Authorization": f"Bearer {self.bot_token}",
            "Content-Type": "application/json",
        }
        payload = {
            "roomId": self.room_id,
            "text": f"{title}\n{body}",
        }

        data = json.dumps(payload).encode("utf-8")
        req = Request(self.url, data=data, headers=headers, method="POST")

        try:
            with urlopen(req, timeout=self.timeout) as resp:
                resp.read()
            logger.info("Push sent: %s", title)
            return True
        except HTTPError as e:
            logger.warning("HTTP error sending push to WebEx: %s %s", e.code, e.reason)
        except URLError as e:
            logger.warning("Network error sending push to WebEx: %s", e.reason)
        except Exception as e:
            logger.warning("Unexpected error sending push to WebEx: %s", e)
        return False
