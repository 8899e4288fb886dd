"""Typed object store over SQLAlchemy.

Every stored kind carries a resource version. Writes of an existing object
are compare-and-swap on that version, so a writer holding a stale copy gets a
``ConflictError`` and must re-read. Objects with finalizers are deleted in two
phases: ``delete`` only stamps ``deletion_timestamp``; the row goes away when
an ``update`` leaves the finalizer list empty.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    TypeVar,
    Union,
)
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import delete as sql_delete
from sqlalchemy import select
from sqlalchemy import update as sql_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleethub.errors import AlreadyExistsError, ConflictError, NotFoundError
from fleethub.logger import get_logger
from fleethub.models.authorization_binding import AuthorizationBindingRecord
from fleethub.models.identity import IdentityRecord
from fleethub.models.join_cluster import JoinClusterRecord
from fleethub.models.secret import SecretRecord
from fleethub.schemas.objects import (
    AuthorizationBinding,
    Identity,
    JoinCluster,
    ObjectMeta,
    Secret,
    StoredObject,
)
from fleethub.services.events import record_event

_logger = get_logger("store")

ObjT = TypeVar("ObjT", bound=StoredObject)
ResultT = TypeVar("ResultT")
_Record = Union[JoinClusterRecord, IdentityRecord, AuthorizationBindingRecord, SecretRecord]


@dataclass(frozen=True)
class _KindBinding:
    model: Any
    fields: Tuple[str, ...]
    status_field: Optional[str] = None
    audited: bool = False


_KINDS: Dict[str, _KindBinding] = {
    JoinCluster.kind: _KindBinding(
        JoinClusterRecord,
        fields=("spec",),
        status_field="status",
        audited=True,
    ),
    Identity.kind: _KindBinding(IdentityRecord, fields=("secrets",)),
    AuthorizationBinding.kind: _KindBinding(
        AuthorizationBindingRecord,
        fields=("role_ref", "subjects"),
    ),
    Secret.kind: _KindBinding(SecretRecord, fields=("type", "data")),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(item) for item in value]
    if isinstance(value, dict):
        return {key: _dump(item) for key, item in value.items()}
    return value


def object_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def _binding(kind: Type[StoredObject]) -> _KindBinding:
    try:
        return _KINDS[kind.kind]
    except KeyError:
        raise TypeError(f"{kind.__name__} is not a stored kind") from None


def _to_object(kind: Type[ObjT], row: _Record) -> ObjT:
    binding = _binding(kind)
    payload: Dict[str, Any] = {field: getattr(row, field) for field in binding.fields}
    if binding.status_field:
        payload[binding.status_field] = getattr(row, binding.status_field) or {}
    metadata = ObjectMeta(
        name=row.name,
        namespace=row.namespace,
        uid=row.uid,
        resource_version=row.resource_version,
        creation_timestamp=_normalize_utc(row.created_at),
        deletion_timestamp=_normalize_utc(row.deletion_timestamp),
        finalizers=list(row.finalizers or []),
        labels=dict(row.labels or {}),
    )
    return kind.model_validate({"metadata": metadata, **payload})


def _matches_labels(row: _Record, selector: Mapping[str, str]) -> bool:
    labels = row.labels or {}
    return all(labels.get(key) == value for key, value in selector.items())


class ObjectStore:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._clock = clock

    async def _load(self, session: AsyncSession, model: Any, namespace: str, name: str) -> Optional[_Record]:
        result = await session.execute(
            select(model)
            .where(model.namespace == namespace, model.name == name)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _reload(self, session: AsyncSession, model: Any, uid: str) -> _Record:
        result = await session.execute(
            select(model).where(model.uid == uid).execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def get(self, kind: Type[ObjT], namespace: str, name: str) -> ObjT:
        binding = _binding(kind)
        async with self._sessionmaker() as session:
            row = await self._load(session, binding.model, namespace, name)
            if row is None:
                raise NotFoundError(kind.kind, namespace, name)
            return _to_object(kind, row)

    async def list(
        self,
        kind: Type[ObjT],
        *,
        namespace: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
        limit: int = 500,
    ) -> List[ObjT]:
        model = _binding(kind).model
        query = select(model).order_by(model.namespace.asc(), model.name.asc())
        if namespace:
            query = query.where(model.namespace == namespace)
        async with self._sessionmaker() as session:
            result = await session.execute(query)
            rows = [row for row in result.scalars().all() if _matches_labels(row, labels or {})]
        return [_to_object(kind, row) for row in rows[:limit]]

    async def create(self, obj: ObjT) -> ObjT:
        kind = type(obj)
        binding = _binding(kind)
        now = self._clock()
        values: Dict[str, Any] = {field: _dump(getattr(obj, field)) for field in binding.fields}
        if binding.status_field:
            values[binding.status_field] = _dump(getattr(obj, binding.status_field))
        row = binding.model(
            uid=uuid4().hex,
            namespace=obj.namespace,
            name=obj.name,
            resource_version=1,
            deletion_timestamp=None,
            finalizers=list(obj.metadata.finalizers),
            labels=dict(obj.metadata.labels),
            created_at=now,
            updated_at=now,
            **values,
        )
        async with self._sessionmaker() as session:
            if await self._load(session, binding.model, obj.namespace, obj.name) is not None:
                raise AlreadyExistsError(kind.kind, obj.namespace, obj.name)
            session.add(row)
            if binding.audited:
                record_event(
                    session,
                    category=kind.kind,
                    name="object.create",
                    object_key=object_key(obj.namespace, obj.name),
                )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise AlreadyExistsError(kind.kind, obj.namespace, obj.name) from None
            _logger.debug(
                "store.create",
                "Created object",
                kind=kind.kind,
                key=object_key(obj.namespace, obj.name),
            )
            return _to_object(kind, row)

    async def _compare_and_swap(
        self,
        session: AsyncSession,
        kind: Type[StoredObject],
        row: _Record,
        expected_version: int,
        values: Dict[str, Any],
    ) -> None:
        model = _binding(kind).model
        result = await session.execute(
            sql_update(model)
            .where(model.uid == row.uid, model.resource_version == expected_version)
            .values(resource_version=expected_version + 1, updated_at=self._clock(), **values)
        )
        if result.rowcount != 1:
            await session.rollback()
            raise ConflictError(kind.kind, row.namespace, row.name)

    async def _locked_row(self, session: AsyncSession, obj: StoredObject) -> _Record:
        kind = type(obj)
        row = await self._load(session, _binding(kind).model, obj.namespace, obj.name)
        if row is None:
            raise NotFoundError(kind.kind, obj.namespace, obj.name)
        if row.resource_version != obj.metadata.resource_version:
            raise ConflictError(
                kind.kind,
                obj.namespace,
                obj.name,
                f"resource version {obj.metadata.resource_version} is stale "
                f"(current {row.resource_version})",
            )
        return row

    async def update(self, obj: ObjT) -> ObjT:
        """Write metadata and payload fields; status is left untouched."""
        kind = type(obj)
        binding = _binding(kind)
        async with self._sessionmaker() as session:
            row = await self._locked_row(session, obj)
            key = object_key(obj.namespace, obj.name)
            finalizers = list(obj.metadata.finalizers)

            if row.deletion_timestamp is not None and not finalizers:
                result = await session.execute(
                    sql_delete(binding.model).where(
                        binding.model.uid == row.uid,
                        binding.model.resource_version == row.resource_version,
                    )
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise ConflictError(kind.kind, obj.namespace, obj.name)
                if binding.audited:
                    record_event(session, category=kind.kind, name="object.finalized", object_key=key)
                await session.commit()
                _logger.info("store.finalized", "Removed object after finalizers cleared", kind=kind.kind, key=key)
                removed = obj.model_copy(deep=True)
                removed.metadata.finalizers = []
                removed.metadata.deletion_timestamp = _normalize_utc(row.deletion_timestamp)
                removed.metadata.resource_version = row.resource_version + 1
                return removed

            values: Dict[str, Any] = {field: _dump(getattr(obj, field)) for field in binding.fields}
            values["finalizers"] = finalizers
            values["labels"] = dict(obj.metadata.labels)
            await self._compare_and_swap(session, kind, row, row.resource_version, values)
            refreshed = await self._reload(session, binding.model, row.uid)
            await session.commit()
            return _to_object(kind, refreshed)

    async def update_status(self, obj: ObjT) -> ObjT:
        kind = type(obj)
        binding = _binding(kind)
        if binding.status_field is None:
            raise TypeError(f"{kind.kind} has no status subresource")
        async with self._sessionmaker() as session:
            row = await self._locked_row(session, obj)
            values = {binding.status_field: _dump(getattr(obj, binding.status_field))}
            await self._compare_and_swap(session, kind, row, row.resource_version, values)
            refreshed = await self._reload(session, binding.model, row.uid)
            await session.commit()
            return _to_object(kind, refreshed)

    async def delete(self, kind: Type[ObjT], namespace: str, name: str) -> Optional[ObjT]:
        """Delete an object, or mark it for deletion while finalizers remain.

        Returns the marked object, or None when the row was removed.
        """
        binding = _binding(kind)
        key = object_key(namespace, name)
        async with self._sessionmaker() as session:
            row = await self._load(session, binding.model, namespace, name)
            if row is None:
                raise NotFoundError(kind.kind, namespace, name)

            if row.finalizers:
                if row.deletion_timestamp is None:
                    await self._compare_and_swap(
                        session,
                        kind,
                        row,
                        row.resource_version,
                        {"deletion_timestamp": self._clock()},
                    )
                    if binding.audited:
                        record_event(
                            session,
                            category=kind.kind,
                            name="object.delete_requested",
                            object_key=key,
                            fields={"finalizers": list(row.finalizers)},
                        )
                    row = await self._reload(session, binding.model, row.uid)
                    await session.commit()
                    _logger.info(
                        "store.delete.mark",
                        "Marked object for deletion",
                        kind=kind.kind,
                        key=key,
                        finalizers=len(row.finalizers),
                    )
                return _to_object(kind, row)

            await session.execute(sql_delete(binding.model).where(binding.model.uid == row.uid))
            if binding.audited:
                record_event(session, category=kind.kind, name="object.delete", object_key=key)
            await session.commit()
            _logger.debug("store.delete", "Deleted object", kind=kind.kind, key=key)
            return None


async def retry_on_conflict(
    operation: Callable[[], Awaitable[ResultT]],
    *,
    attempts: int = 3,
) -> ResultT:
    """Run a read-modify-write operation again whenever its write conflicts."""
    attempt = 1
    while True:
        try:
            return await operation()
        except ConflictError as exc:
            if attempt >= attempts:
                raise
            _logger.debug(
                "store.conflict.retry",
                "Retrying after write conflict",
                kind=exc.kind,
                key=object_key(exc.namespace, exc.name),
                attempt=attempt,
            )
            attempt += 1
