import json
import logging
import time
from typing import Any, List, Optional

import redis
from fastapi.encoders import jsonable_encoder

from priceboard.models import AlarmRule

logger = logging.getLogger(__name__)


class RuleStore:
    """
    Durable storage for alarm rules: Redis when reachable, otherwise an
    in-memory copy that lives as long as the process.

    We store a single key that contains:
        {"ts": <unix_epoch>, "data": [ AlarmRule as dict ... ]}
    """

    def __init__(self, client: Optional[Any] = None, key: str = "alarms:rules"):
        self.key = key
        self._client = client
        self._local_payload: Optional[dict] = None

    @classmethod
    def from_url(cls, redis_url: str, key: str = "alarms:rules") -> "RuleStore":
        try:
            client = redis.Redis.from_url(redis_url, decode_responses=True)
            client.ping()
            logger.info("Using Redis rule store at %s", redis_url)
        except redis.RedisError as e:
            logger.warning("Failed to connect to Redis (%s); keeping rules in memory only.", e)
            client = None
        return cls(client=client, key=key)

    @property
    def is_durable(self) -> bool:
        return self._client is not None

    # ----------------- public API -----------------

    def save_rules(self, rules: List[AlarmRule]) -> None:
        payload = {
            "ts": time.time(),
            "data": jsonable_encoder(rules),
        }
        # local copy is always kept so a Redis outage loses nothing mid-session
        self._local_payload = payload

        if self._client is None:
            return
        try:
            self._client.set(self.key, json.dumps(payload))
        except redis.RedisError as e:
            logger.warning("Redis set failed, rules kept in memory only: %s", e)

    def load_rules(self) -> List[AlarmRule]:
        raw = None
        if self._client is not None:
            try:
                raw = self._client.get(self.key)
            except redis.RedisError as e:
                logger.warning("Redis get failed, falling back to in-memory rules: %s", e)
                raw = None

        if raw is not None:
            try:
                payload = json.loads(raw)
            except ValueError:
                logger.error("Stored rules under %s are not valid JSON; ignoring them", self.key)
                return []
        elif self._local_payload is not None:
            payload = self._local_payload
        else:
            return []

        rules: List[AlarmRule] = []
        for item in payload.get("data", []):
            try:
                rules.append(AlarmRule.model_validate(item))
            except ValueError as e:
                logger.error("Skipping unreadable stored rule %r: %s", item, e)
        return rules
