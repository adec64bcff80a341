"""Data store for the portal: one capability interface, two backends.

``MemoryStorage`` keeps everything in process-local dicts; ``SqlStorage`` maps
the same operations onto SQLAlchemy rows. Both return pydantic schema objects,
never live rows or shared references, and compute derived counters the same
way:

* ``Ask.responses`` is recounted from the responses table after each insert.
* ``Ask.views`` is incremented by exactly one per call (in SQL as a single
  ``views = views + 1`` UPDATE).

Callers validate patches before calling in; the store applies them as-is.
"""
from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel
from sqlalchemy import delete, desc, func, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from portal.errors import InternalError, NotFound, PortalError
from portal.models import (
    AskRow, Base, DocumentRow, MetricsRow, MilestoneRow, ResponseRow, SessionRow, StakeholderRow,
    UpdateRow, User,
)
from portal.schemas import (
    METRICS_DEFAULTS, METRICS_ID, Ask, AskCreate, AskPatch, AskResponse, CompanyUpdate,
    CompanyUpdateCreate, CompanyUpdatePatch, Document, DocumentCreate, Metrics, MetricsPatch, Milestone, MilestoneCreate,
    MilestonePatch, Principal, SessionRecord, Stakeholder, StakeholderCreate, StakeholderPatch,
)
from portal.utils import utcnow

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

COLLECTIONS = ("updates", "stakeholders", "milestones", "documents", "asks", "responses")

# Dialects with INSERT ... ON CONFLICT DO NOTHING.
_INSERT_OR_IGNORE = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}


class Storage(Protocol):
    # Principals and sessions
    def get_user(self, user_id: str) -> Principal | None: ...
    def upsert_user(self, principal: Principal) -> Principal: ...
    def create_session(self, record: SessionRecord) -> SessionRecord: ...
    def get_session(self, session_id: str) -> SessionRecord | None: ...
    def delete_session(self, session_id: str) -> bool: ...
    def purge_expired_sessions(self, now: datetime) -> int: ...

    # Metrics
    def get_metrics(self) -> Metrics | None: ...
    def update_metrics(self, patch: MetricsPatch) -> Metrics: ...

    # Company updates
    def list_updates(self) -> list[CompanyUpdate]: ...
    def create_update(self, data: CompanyUpdateCreate) -> CompanyUpdate: ...
    def update_update(self, update_id: int, patch: CompanyUpdatePatch) -> CompanyUpdate | None: ...
    def delete_update(self, update_id: int) -> bool: ...

    # Cap table
    def list_stakeholders(self) -> list[Stakeholder]: ...
    def create_stakeholder(self, data: StakeholderCreate) -> Stakeholder: ...
    def update_stakeholder(self, stakeholder_id: int, patch: StakeholderPatch) -> Stakeholder | None: ...

    # Timeline
    def list_milestones(self) -> list[Milestone]: ...
    def create_milestone(self, data: MilestoneCreate) -> Milestone: ...
    def update_milestone(self, milestone_id: int, patch: MilestonePatch) -> Milestone | None: ...
    def delete_milestone(self, milestone_id: int) -> bool: ...

    # Documents
    def list_documents(self) -> list[Document]: ...
    def create_document(self, data: DocumentCreate) -> Document: ...
    def delete_document(self, document_id: int) -> bool: ...

    # Asks and responses
    def list_asks(self) -> list[Ask]: ...
    def get_ask(self, ask_id: int) -> Ask | None: ...
    def create_ask(self, data: AskCreate) -> Ask: ...
    def update_ask(self, ask_id: int, patch: AskPatch) -> Ask | None: ...
    def delete_ask(self, ask_id: int) -> bool: ...
    def increment_ask_views(self, ask_id: int) -> bool: ...
    def list_responses(self, ask_id: int) -> list[AskResponse]: ...
    def create_response(self, ask_id: int, author: str, content: str) -> AskResponse: ...

    def close(self) -> None: ...


def _newest_first(items: Iterable[M], attr: str = "created_at") -> list[M]:
    return sorted(items, key=lambda item: (getattr(item, attr), item.id), reverse=True)


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryStorage:
    """Process-local store.

    Every operation runs under one lock, so a patch merge is read-then-write
    atomic and counters never lose increments. Ids come from per-collection
    counters and are never handed out twice.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._users: dict[str, Principal] = {}
        self._sessions: dict[str, SessionRecord] = {}
        self._metrics: Metrics | None = None
        self._rows: dict[str, dict[int, BaseModel]] = {name: {} for name in COLLECTIONS}
        self._ids = {name: itertools.count(1) for name in COLLECTIONS}

    # -- generic helpers ----------------------------------------------------

    def _insert(self, collection: str, model: type[M], **fields: Any) -> M:
        with self._lock:
            obj = model(id=next(self._ids[collection]), **fields)
            self._rows[collection][obj.id] = obj
            return obj.model_copy()

    def _patch(self, collection: str, entity_id: int, changes: dict[str, Any]) -> Any:
        with self._lock:
            existing = self._rows[collection].get(entity_id)
            if existing is None:
                return None
            updated = existing.model_copy(update=changes)
            self._rows[collection][entity_id] = updated
            return updated.model_copy()

    def _delete(self, collection: str, entity_id: int) -> bool:
        with self._lock:
            return self._rows[collection].pop(entity_id, None) is not None

    def _all(self, collection: str) -> list[Any]:
        with self._lock:
            return [obj.model_copy() for obj in self._rows[collection].values()]

    # -- principals and sessions ------------------------------------------

    def get_user(self, user_id: str) -> Principal | None:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy() if user else None

    def upsert_user(self, principal: Principal) -> Principal:
        now = utcnow()
        with self._lock:
            existing = self._users.get(principal.id)
            created_at = existing.created_at if existing else now
            stored = principal.model_copy(update={"created_at": created_at, "updated_at": now})
            self._users[principal.id] = stored
            return stored.model_copy()

    def create_session(self, record: SessionRecord) -> SessionRecord:
        with self._lock:
            self._sessions[record.id] = record.model_copy()
            return record

    def get_session(self, session_id: str) -> SessionRecord | None:
        with self._lock:
            record = self._sessions.get(session_id)
            return record.model_copy() if record else None

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._lock:
            expired = [sid for sid, rec in self._sessions.items() if rec.is_expired(now)]
            for sid in expired:
                del self._sessions[sid]
            return len(expired)

    # -- metrics ------------------------------------------------------------

    def get_metrics(self) -> Metrics | None:
        with self._lock:
            return self._metrics.model_copy() if self._metrics else None

    def update_metrics(self, patch: MetricsPatch) -> Metrics:
        with self._lock:
            current = self._metrics or Metrics(id=METRICS_ID, **METRICS_DEFAULTS)
            self._metrics = current.model_copy(update={**patch.changes(), "updated_at": utcnow()})
            return self._metrics.model_copy()

    # -- company updates ----------------------------------------------------

    def list_updates(self) -> list[CompanyUpdate]:
        return _newest_first(self._all("updates"))

    def create_update(self, data: CompanyUpdateCreate) -> CompanyUpdate:
        return self._insert(
            "updates", CompanyUpdate, **data.model_dump(),
            attachments=0, comments=0, views=0, created_at=utcnow(),
        )

    def update_update(self, update_id: int, patch: CompanyUpdatePatch) -> CompanyUpdate | None:
        return self._patch("updates", update_id, patch.changes())

    def delete_update(self, update_id: int) -> bool:
        return self._delete("updates", update_id)

    # -- stakeholders -------------------------------------------------------

    def list_stakeholders(self) -> list[Stakeholder]:
        return sorted(self._all("stakeholders"), key=lambda s: s.id)

    def create_stakeholder(self, data: StakeholderCreate) -> Stakeholder:
        return self._insert("stakeholders", Stakeholder, **data.model_dump())

    def update_stakeholder(self, stakeholder_id: int, patch: StakeholderPatch) -> Stakeholder | None:
        return self._patch("stakeholders", stakeholder_id, patch.changes())

    # -- milestones ---------------------------------------------------------

    def list_milestones(self) -> list[Milestone]:
        return sorted(self._all("milestones"), key=lambda m: m.id)

    def create_milestone(self, data: MilestoneCreate) -> Milestone:
        return self._insert("milestones", Milestone, **data.model_dump())

    def update_milestone(self, milestone_id: int, patch: MilestonePatch) -> Milestone | None:
        return self._patch("milestones", milestone_id, patch.changes())

    def delete_milestone(self, milestone_id: int) -> bool:
        return self._delete("milestones", milestone_id)

    # -- documents ----------------------------------------------------------

    def list_documents(self) -> list[Document]:
        return _newest_first(self._all("documents"), attr="date")

    def create_document(self, data: DocumentCreate) -> Document:
        return self._insert("documents", Document, **data.model_dump(), date=utcnow())

    def delete_document(self, document_id: int) -> bool:
        return self._delete("documents", document_id)

    # -- asks and responses -------------------------------------------------

    def list_asks(self) -> list[Ask]:
        return _newest_first(self._all("asks"))

    def get_ask(self, ask_id: int) -> Ask | None:
        with self._lock:
            ask = self._rows["asks"].get(ask_id)
            return ask.model_copy() if ask else None

    def create_ask(self, data: AskCreate) -> Ask:
        return self._insert("asks", Ask, **data.model_dump(), responses=0, views=0, created_at=utcnow())

    def update_ask(self, ask_id: int, patch: AskPatch) -> Ask | None:
        return self._patch("asks", ask_id, patch.changes())

    def delete_ask(self, ask_id: int) -> bool:
        return self._delete("asks", ask_id)

    def increment_ask_views(self, ask_id: int) -> bool:
        with self._lock:
            ask = self._rows["asks"].get(ask_id)
            if ask is None:
                return False
            self._rows["asks"][ask_id] = ask.model_copy(update={"views": ask.views + 1})
            return True

    def list_responses(self, ask_id: int) -> list[AskResponse]:
        return _newest_first(r for r in self._all("responses") if r.ask_id == ask_id)

    def create_response(self, ask_id: int, author: str, content: str) -> AskResponse:
        with self._lock:
            ask = self._rows["asks"].get(ask_id)
            if ask is None:
                raise NotFound("Ask not found")
            response = self._insert(
                "responses", AskResponse, ask_id=ask_id, author=author, content=content,
                created_at=utcnow(),
            )
            count = sum(1 for r in self._rows["responses"].values() if r.ask_id == ask_id)
            self._rows["asks"][ask_id] = ask.model_copy(update={"responses": count})
            return response

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Relational backend
# ---------------------------------------------------------------------------


class SqlStorage:
    """SQLAlchemy-backed store. One short transaction per operation."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        Base.metadata.create_all(engine)
        self._factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def _scope(self, op: str, entity: str, entity_id: Any = None) -> Generator[Session, None, None]:
        session = self._factory()
        try:
            yield session
            session.commit()
        except PortalError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            log.exception("Storage %s failed (entity=%s, id=%s)", op, entity, entity_id)
            raise InternalError() from exc
        finally:
            session.close()

    # -- generic helpers ----------------------------------------------------

    def _insert(self, row_model: type[Base], schema: type[M], entity: str, **values: Any) -> M:
        with self._scope("create", entity) as session:
            row = row_model(**values)
            session.add(row)
            session.flush()
            return schema.model_validate(row)

    def _patch(self, row_model: type[Base], schema: type[M], entity: str, entity_id: int,
               changes: dict[str, Any]) -> M | None:
        with self._scope("update", entity, entity_id) as session:
            row = session.get(row_model, entity_id, with_for_update=True)
            if row is None:
                return None
            for field, value in changes.items():
                setattr(row, field, value)
            session.flush()
            return schema.model_validate(row)

    def _delete(self, row_model: Any, entity: str, entity_id: int) -> bool:
        with self._scope("delete", entity, entity_id) as session:
            result = session.execute(delete(row_model).where(row_model.id == entity_id))
            return result.rowcount > 0

    def _list(self, row_model: Any, schema: type[M], entity: str, *order_by: Any) -> list[M]:
        with self._scope("list", entity) as session:
            rows = session.execute(select(row_model).order_by(*order_by)).scalars().all()
            return [schema.model_validate(r) for r in rows]

    # -- principals and sessions ------------------------------------------

    def get_user(self, user_id: str) -> Principal | None:
        with self._scope("get", "user", user_id) as session:
            user = session.get(User, user_id)
            return Principal.model_validate(user) if user else None

    def upsert_user(self, principal: Principal) -> Principal:
        now = utcnow()
        with self._scope("upsert", "user", principal.id) as session:
            user = session.get(User, principal.id)
            if user is None:
                user = User(id=principal.id, created_at=now)
                session.add(user)
            user.email = principal.email
            user.first_name = principal.first_name
            user.last_name = principal.last_name
            user.role = principal.role
            user.updated_at = now
            session.flush()
            return Principal.model_validate(user)

    def create_session(self, record: SessionRecord) -> SessionRecord:
        with self._scope("create", "session") as session:
            session.add(SessionRow(**record.model_dump()))
        return record

    def get_session(self, session_id: str) -> SessionRecord | None:
        with self._scope("get", "session") as session:
            row = session.get(SessionRow, session_id)
            return SessionRecord.model_validate(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        return self._delete(SessionRow, "session", session_id)

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._scope("purge", "session") as session:
            result = session.execute(delete(SessionRow).where(SessionRow.expires_at <= now))
            return result.rowcount

    # -- metrics ------------------------------------------------------------

    def get_metrics(self) -> Metrics | None:
        with self._scope("get", "metrics") as session:
            row = session.get(MetricsRow, METRICS_ID)
            return Metrics.model_validate(row) if row else None

    def _ensure_metrics_row(self, session: Session) -> None:
        """Create the singleton row unless it exists; concurrent first edits insert once."""
        values = {"id": METRICS_ID, **METRICS_DEFAULTS, "updated_at": utcnow()}
        insert_or_ignore = _INSERT_OR_IGNORE.get(session.get_bind().dialect.name)
        if insert_or_ignore is not None:
            session.execute(insert_or_ignore(MetricsRow).values(**values).on_conflict_do_nothing())
        elif session.get(MetricsRow, METRICS_ID) is None:
            session.add(MetricsRow(**values))
            session.flush()

    def update_metrics(self, patch: MetricsPatch) -> Metrics:
        with self._scope("update", "metrics") as session:
            self._ensure_metrics_row(session)
            row = session.get(MetricsRow, METRICS_ID, with_for_update=True)
            for field, value in patch.changes().items():
                setattr(row, field, value)
            row.updated_at = utcnow()
            session.flush()
            return Metrics.model_validate(row)

    # -- company updates ----------------------------------------------------

    def list_updates(self) -> list[CompanyUpdate]:
        return self._list(UpdateRow, CompanyUpdate, "update", desc(UpdateRow.created_at), desc(UpdateRow.id))

    def create_update(self, data: CompanyUpdateCreate) -> CompanyUpdate:
        return self._insert(
            UpdateRow, CompanyUpdate, "update", **data.model_dump(),
            attachments=0, comments=0, views=0, created_at=utcnow(),
        )

    def update_update(self, update_id: int, patch: CompanyUpdatePatch) -> CompanyUpdate | None:
        return self._patch(UpdateRow, CompanyUpdate, "update", update_id, patch.changes())

    def delete_update(self, update_id: int) -> bool:
        return self._delete(UpdateRow, "update", update_id)

    # -- stakeholders -------------------------------------------------------

    def list_stakeholders(self) -> list[Stakeholder]:
        return self._list(StakeholderRow, Stakeholder, "stakeholder", StakeholderRow.id)

    def create_stakeholder(self, data: StakeholderCreate) -> Stakeholder:
        return self._insert(StakeholderRow, Stakeholder, "stakeholder", **data.model_dump())

    def update_stakeholder(self, stakeholder_id: int, patch: StakeholderPatch) -> Stakeholder | None:
        return self._patch(StakeholderRow, Stakeholder, "stakeholder", stakeholder_id, patch.changes())

    # -- milestones ---------------------------------------------------------

    def list_milestones(self) -> list[Milestone]:
        return self._list(MilestoneRow, Milestone, "milestone", MilestoneRow.id)

    def create_milestone(self, data: MilestoneCreate) -> Milestone:
        return self._insert(MilestoneRow, Milestone, "milestone", **data.model_dump())

    def update_milestone(self, milestone_id: int, patch: MilestonePatch) -> Milestone | None:
        return self._patch(MilestoneRow, Milestone, "milestone", milestone_id, patch.changes())

    def delete_milestone(self, milestone_id: int) -> bool:
        return self._delete(MilestoneRow, "milestone", milestone_id)

    # -- documents ----------------------------------------------------------

    def list_documents(self) -> list[Document]:
        return self._list(DocumentRow, Document, "document", desc(DocumentRow.date), desc(DocumentRow.id))

    def create_document(self, data: DocumentCreate) -> Document:
        return self._insert(DocumentRow, Document, "document", **data.model_dump(), date=utcnow())

    def delete_document(self, document_id: int) -> bool:
        return self._delete(DocumentRow, "document", document_id)

    # -- asks and responses -------------------------------------------------

    def list_asks(self) -> list[Ask]:
        return self._list(AskRow, Ask, "ask", desc(AskRow.created_at), desc(AskRow.id))

    def get_ask(self, ask_id: int) -> Ask | None:
        with self._scope("get", "ask", ask_id) as session:
            row = session.get(AskRow, ask_id)
            return Ask.model_validate(row) if row else None

    def create_ask(self, data: AskCreate) -> Ask:
        return self._insert(
            AskRow, Ask, "ask", **data.model_dump(), responses=0, views=0, created_at=utcnow(),
        )

    def update_ask(self, ask_id: int, patch: AskPatch) -> Ask | None:
        return self._patch(AskRow, Ask, "ask", ask_id, patch.changes())

    def delete_ask(self, ask_id: int) -> bool:
        return self._delete(AskRow, "ask", ask_id)

    def increment_ask_views(self, ask_id: int) -> bool:
        with self._scope("increment_views", "ask", ask_id) as session:
            result = session.execute(
                update(AskRow).where(AskRow.id == ask_id).values(views=AskRow.views + 1)
            )
            return result.rowcount > 0

    def list_responses(self, ask_id: int) -> list[AskResponse]:
        with self._scope("list", "response", ask_id) as session:
            rows = session.execute(
                select(ResponseRow).where(ResponseRow.ask_id == ask_id)
                .order_by(desc(ResponseRow.created_at), desc(ResponseRow.id))
            ).scalars().all()
            return [AskResponse.model_validate(r) for r in rows]

    def create_response(self, ask_id: int, author: str, content: str) -> AskResponse:
        with self._scope("create", "response", ask_id) as session:
            ask = session.get(AskRow, ask_id, with_for_update=True)
            if ask is None:
                raise NotFound("Ask not found")
            row = ResponseRow(ask_id=ask_id, author=author, content=content, created_at=utcnow())
            session.add(row)
            session.flush()
            ask.responses = session.execute(
                select(func.count()).select_from(ResponseRow).where(ResponseRow.ask_id == ask_id)
            ).scalar_one()
            return AskResponse.model_validate(row)

    def close(self) -> None:
        self.engine.dispose()
