import json
from typing import List, Optional, Tuple

import redis.asyncio as redis

from src.core.service.collectible.models import Template
from src.core.logger.logger import get_logger

logger = get_logger(__name__)


class TemplateSnapshotStore:
    """
    Redis copy of the template registry snapshot.

    Used to warm a cold process. Redis is an optimisation here, so every failure is
    logged and reported as a miss instead of raised.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = "collectibles:template:"
        self.index_key = f"{self.key_prefix}index"
        self.fetched_at_key = f"{self.key_prefix}fetched_at"

    def _get_key(self, template_id: int) -> str:
        return f"{self.key_prefix}{template_id}"

    async def save_snapshot(self, templates: List[Template], fetched_at: float) -> bool:
        """Replace the stored snapshot in one transaction"""
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.delete(self.index_key)
                for template in templates:
                    pipe.setex(self._get_key(template.template_id), self.ttl_seconds, template.model_dump_json())
                if templates:
                    pipe.sadd(self.index_key, *[str(t.template_id) for t in templates])
                    pipe.expire(self.index_key, self.ttl_seconds)
                pipe.setex(self.fetched_at_key, self.ttl_seconds, str(fetched_at))
                await pipe.execute()

            logger.debug(
                "Saved template snapshot",
                extra={"template_count": len(templates), "ttl": self.ttl_seconds}
            )
            return True

        except Exception as e:
            logger.warning(
                "Error saving template snapshot",
                extra={"template_count": len(templates), "error": str(e)}
            )
            return False

    async def load_snapshot(self) -> Optional[Tuple[List[Template], float]]:
        """Return (templates, fetched_at) or None when nothing usable is stored"""
        try:
            fetched_at = await self.redis.get(self.fetched_at_key)
            if fetched_at is None:
                return None

            template_ids = sorted(int(i) for i in await self.redis.smembers(self.index_key))
            if not template_ids:
                return [], float(fetched_at)

            payloads = await self.redis.mget([self._get_key(i) for i in template_ids])
            # Any missing key means the snapshot was invalidated piecewise; treat as a miss
            if any(payload is None for payload in payloads):
                return None

            templates = [Template(**json.loads(payload)) for payload in payloads]
            return templates, float(fetched_at)

        except Exception as e:
            logger.warning("Error loading template snapshot", extra={"error": str(e)})
            return None

    async def delete_template(self, template_id: int) -> None:
        try:
            await self.redis.delete(self._get_key(template_id))
            logger.debug("Deleted cached template", extra={"template_id": template_id})
        except Exception as e:
            logger.warning(
                "Error deleting cached template",
                extra={"template_id": template_id, "error": str(e)}
            )

    async def clear(self) -> None:
        try:
            template_ids = await self.redis.smembers(self.index_key)
            keys = [self._get_key(int(i)) for i in template_ids]
            await self.redis.delete(self.index_key, self.fetched_at_key, *keys)
        except Exception as e:
            logger.warning("Error clearing template snapshot", extra={"error": str(e)})
