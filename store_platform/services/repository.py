"""
SQL-backed repositories for StoreRecord and AuditEvent.

Status writes go through `update(..., expected_status=...)`, a single
guarded UPDATE. It returns None when the row is gone or its status moved on,
which is how the background task and the reconciler avoid clobbering each
other or resurrecting a deleted store.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from ..db import AuditEventORM, Database, StoreORM, as_utc, utcnow
from ..errors import ConflictError
from ..models import AuditAction, AuditEvent, StoreCredentials, StoreRecord, StoreStatus, StoreType

logger = logging.getLogger("repository")


def _to_record(row: StoreORM) -> StoreRecord:
    return StoreRecord(
        id=row.id,
        name=row.name,
        type=StoreType(row.type),
        status=StoreStatus(row.status),
        host=row.host,
        url=row.url,
        owner_id=row.owner_id,
        credentials=StoreCredentials(**row.credentials),
        error_message=row.error_message,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _to_event(row: AuditEventORM) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        entity_id=row.entity_id,
        entity=row.entity,
        action=AuditAction(row.action),
        owner_id=row.owner_id,
        metadata=row.details or {},
        created_at=as_utc(row.created_at),
    )


def _column_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for key, value in fields.items():
        if isinstance(value, (StoreStatus, StoreType)):
            value = value.value
        elif isinstance(value, StoreCredentials):
            value = value.model_dump()
        values[key] = value
    return values


class SqlStoreRepository:
    def __init__(self, db: Database):
        self.db = db

    async def create(self, record: StoreRecord) -> StoreRecord:
        row = StoreORM(**_column_values(record.model_dump()))
        try:
            async with self.db.session() as session:
                session.add(row)
        except IntegrityError as e:
            raise ConflictError(f"A store with host {record.host} already exists") from e
        return record

    async def get(self, store_id: str) -> Optional[StoreRecord]:
        async with self.db.session() as session:
            row = await session.get(StoreORM, store_id)
            return _to_record(row) if row else None

    async def find_by_host(self, host: str) -> Optional[StoreRecord]:
        async with self.db.session() as session:
            result = await session.execute(select(StoreORM).where(StoreORM.host == host))
            row = result.scalars().first()
            return _to_record(row) if row else None

    async def list(
        self,
        owner_id: Optional[str] = None,
        status: Optional[StoreStatus] = None,
    ) -> List[StoreRecord]:
        stmt = select(StoreORM).order_by(StoreORM.created_at.desc())
        if owner_id is not None:
            stmt = stmt.where(StoreORM.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(StoreORM.status == status.value)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [_to_record(row) for row in result.scalars().all()]

    async def count(
        self,
        owner_id: Optional[str] = None,
        status: Optional[StoreStatus] = None,
        exclude_status: Optional[StoreStatus] = None,
    ) -> int:
        stmt = select(func.count()).select_from(StoreORM)
        if owner_id is not None:
            stmt = stmt.where(StoreORM.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(StoreORM.status == status.value)
        if exclude_status is not None:
            stmt = stmt.where(StoreORM.status != exclude_status.value)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def update(
        self,
        store_id: str,
        expected_status: Optional[StoreStatus] = None,
        **fields: Any,
    ) -> Optional[StoreRecord]:
        values = _column_values(fields)
        values["updated_at"] = utcnow()
        stmt = update(StoreORM).where(StoreORM.id == store_id)
        if expected_status is not None:
            stmt = stmt.where(StoreORM.status == expected_status.value)
        async with self.db.session() as session:
            result = await session.execute(stmt.values(**values))
            if result.rowcount == 0:
                return None
            row = await session.get(StoreORM, store_id, populate_existing=True)
            return _to_record(row) if row else None

    async def delete(self, store_id: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(delete(StoreORM).where(StoreORM.id == store_id))
            return result.rowcount > 0


class SqlAuditRepository:
    def __init__(self, db: Database):
        self.db = db

    async def append(self, event: AuditEvent) -> AuditEvent:
        row = AuditEventORM(
            entity_id=event.entity_id,
            entity=event.entity,
            action=event.action.value,
            owner_id=event.owner_id,
            details=event.metadata,
            created_at=event.created_at or utcnow(),
        )
        async with self.db.session() as session:
            session.add(row)
            await session.flush()
            return _to_event(row)

    async def list_for_entity(self, entity_id: str, limit: int = 50) -> List[AuditEvent]:
        stmt = (
            select(AuditEventORM)
            .where(AuditEventORM.entity_id == entity_id)
            .order_by(AuditEventORM.created_at.desc(), AuditEventORM.id.desc())
            .limit(limit)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [_to_event(row) for row in result.scalars().all()]

    async def list_recent(self, limit: int = 100) -> List[AuditEvent]:
        stmt = (
            select(AuditEventORM)
            .order_by(AuditEventORM.created_at.desc(), AuditEventORM.id.desc())
            .limit(limit)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [_to_event(row) for row in result.scalars().all()]
