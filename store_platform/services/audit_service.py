"""
Audit recorder — append-only trail of store lifecycle events.

Every event goes to the audit repository and, when Redis is configured, to
the per-store Redis Stream plus the global `store:events` channel for
real-time dashboard consumption. Recording never raises: a broken audit
sink is logged and the lifecycle operation carries on.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from ..db import utcnow
from ..models import AuditAction, AuditEvent
from .interfaces import AuditRepository

logger = logging.getLogger("audit_service")

STREAM_MAXLEN = 100
EVENTS_CHANNEL = "store:events"


def stream_key(store_id: str) -> str:
    return f"store:events:{store_id}"


class AuditService:
    def __init__(
        self,
        repository: AuditRepository,
        redis_client: Optional[redis.Redis] = None,
        publish_timeout: float = 2.0,
    ):
        self.repository = repository
        self.redis = redis_client
        # upper bound on how long a slow Redis can hold up the caller
        self.publish_timeout = publish_timeout

    async def record(
        self,
        action: AuditAction,
        store_id: str,
        owner_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        event = AuditEvent(
            entity_id=store_id,
            action=action,
            owner_id=owner_id,
            metadata=metadata or {},
            created_at=utcnow(),
        )
        saved = None
        try:
            saved = await self.repository.append(event)
            logger.info(f"AUDIT: {action.value} on Store {store_id} by {owner_id or 'system'}")
        except Exception as e:
            logger.error(f"Failed to create audit log for {action.value} on {store_id}: {e}")
        await self._publish(event)
        return saved

    async def _publish(self, event: AuditEvent) -> None:
        """Publish event to Redis Stream for real-time dashboard consumption."""
        if self.redis is None:
            return
        payload = {
            "type": event.action.value,
            "store": event.entity_id,
            "owner": event.owner_id or "",
            "timestamp": event.created_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "metadata": json.dumps(event.metadata, default=str),
        }
        try:
            await asyncio.wait_for(self._send(event.entity_id, payload), self.publish_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Redis publish for {event.entity_id} timed out after {self.publish_timeout}s (non-fatal)"
            )
        except Exception as e:
            logger.debug(f"Redis publish failed (non-fatal): {e}")

    async def _send(self, store_id: str, payload: Dict[str, str]) -> None:
        await self.redis.xadd(stream_key(store_id), payload, maxlen=STREAM_MAXLEN)
        await self.redis.publish(EVENTS_CHANNEL, json.dumps(payload))

    async def events_for_store(self, store_id: str, limit: int = 50) -> List[AuditEvent]:
        try:
            return await self.repository.list_for_entity(store_id, limit=limit)
        except Exception as e:
            logger.error(f"Failed to get audit logs for {store_id}: {e}")
            return []

    async def recent_events(self, limit: int = 100) -> List[AuditEvent]:
        try:
            return await self.repository.list_recent(limit=limit)
        except Exception as e:
            logger.error(f"Failed to get recent audit logs: {e}")
            return []
