from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, Path, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from portal.auth import SESSION_COOKIE, Authenticator, SessionManager, require_admin, require_authenticated
from portal.config import Settings
from portal.credentials import CredentialStore, default_credential_store
from portal.db import build_storage
from portal.errors import Forbidden, InternalError, NotFound, PortalError, ValidationError
from portal.schemas import (
    Ask, AskCreate, AskPatch, AskResponse, CompanyUpdate, CompanyUpdateCreate, CompanyUpdatePatch,
    Document, DocumentCreate, LoginRequest, LoginResult, Metrics, MetricsPatch, Milestone,
    MilestoneCreate, MilestonePatch, Principal, ResponseCreate, Stakeholder, StakeholderCreate,
    StakeholderPatch, Success,
)
from portal.seed import seed_demo_data
from portal.storage import Storage

log = logging.getLogger(__name__)

# Row ids are signed 64-bit integers in every backend.
EntityId = Annotated[int, Path(ge=1, le=2**63 - 1)]


@dataclass
class Portal:
    """Collaborators attached to ``app.state.portal`` for the lifetime of the process."""

    settings: Settings
    storage: Storage
    authenticator: Authenticator
    sessions: SessionManager


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def get_portal(request: Request) -> Portal:
    return request.app.state.portal


def get_storage(portal: Portal = Depends(get_portal)) -> Storage:
    return portal.storage


def current_principal(request: Request, portal: Portal = Depends(get_portal)) -> Principal | None:
    return portal.sessions.load(request.cookies.get(SESSION_COOKIE))


def authenticated(principal: Principal | None = Depends(current_principal)) -> Principal:
    return require_authenticated(principal)


def admin(request: Request, principal: Principal | None = Depends(current_principal)) -> Principal:
    try:
        return require_admin(principal)
    except Forbidden:
        log.warning("forbidden principal=%s %s %s", principal.id, request.method, request.url.path)
        raise


def _audit(principal: Principal, action: str, entity: str, entity_id: int | None = None) -> None:
    log.info("audit %s %s id=%s by=%s", action, entity, entity_id, principal.id)


def _found(obj, label: str):
    if obj is None:
        raise NotFound(f"{label} not found")
    return obj


router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Routes: Auth
# ---------------------------------------------------------------------------


@router.post("/login", response_model=LoginResult, tags=["Auth"], summary="Log in with email and password")
async def login(body: LoginRequest, response: Response, portal: Portal = Depends(get_portal)):
    principal = portal.authenticator.login(body.email, body.password)
    _, cookie = portal.sessions.start(principal)
    portal.sessions.set_cookie(response, cookie)
    return LoginResult(user=principal)


@router.post("/logout", response_model=Success, tags=["Auth"], summary="Destroy the current session")
async def logout(request: Request, response: Response, portal: Portal = Depends(get_portal)):
    portal.sessions.logout(request.cookies.get(SESSION_COOKIE))
    portal.sessions.clear_cookie(response)
    return Success()


@router.get("/auth/user", response_model=Principal, tags=["Auth"], summary="Current principal")
async def auth_user(principal: Principal = Depends(authenticated)):
    return principal


# ---------------------------------------------------------------------------
# Routes: Metrics
# ---------------------------------------------------------------------------


@router.get("/metrics", response_model=Metrics, tags=["Metrics"],
            summary="Company KPIs (zero defaults before the first edit)")
async def get_metrics(storage: Storage = Depends(get_storage)):
    return storage.get_metrics() or Metrics.zero()


@router.put("/metrics", response_model=Metrics, tags=["Metrics"], summary="Update KPIs (partial)")
async def update_metrics(body: MetricsPatch, principal: Principal = Depends(admin),
                         storage: Storage = Depends(get_storage)):
    metrics = storage.update_metrics(body)
    _audit(principal, "update", "metrics", metrics.id)
    return metrics


# ---------------------------------------------------------------------------
# Routes: Company updates
# ---------------------------------------------------------------------------


@router.get("/updates", response_model=list[CompanyUpdate], tags=["Updates"], summary="List updates, newest first")
async def list_updates(storage: Storage = Depends(get_storage)):
    return storage.list_updates()


@router.post("/updates", response_model=CompanyUpdate, status_code=201, tags=["Updates"],
             summary="Publish a company update")
async def create_update(body: CompanyUpdateCreate, principal: Principal = Depends(admin),
                        storage: Storage = Depends(get_storage)):
    update = storage.create_update(body)
    _audit(principal, "create", "update", update.id)
    return update


@router.put("/updates/{update_id}", response_model=CompanyUpdate, tags=["Updates"],
            summary="Edit a company update (partial)")
async def update_update(update_id: EntityId, body: CompanyUpdatePatch, principal: Principal = Depends(admin),
                        storage: Storage = Depends(get_storage)):
    update = _found(storage.update_update(update_id, body), "Update")
    _audit(principal, "update", "update", update_id)
    return update


@router.delete("/updates/{update_id}", status_code=204, tags=["Updates"], summary="Delete a company update")
async def delete_update(update_id: EntityId, principal: Principal = Depends(admin),
                        storage: Storage = Depends(get_storage)):
    if not storage.delete_update(update_id):
        raise NotFound("Update not found")
    _audit(principal, "delete", "update", update_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Routes: Cap table
# ---------------------------------------------------------------------------


@router.get("/stakeholders", response_model=list[Stakeholder], tags=["Cap table"], summary="List stakeholders")
async def list_stakeholders(storage: Storage = Depends(get_storage)):
    return storage.list_stakeholders()


@router.post("/stakeholders", response_model=Stakeholder, status_code=201, tags=["Cap table"],
             summary="Add a stakeholder")
async def create_stakeholder(body: StakeholderCreate, principal: Principal = Depends(admin),
                             storage: Storage = Depends(get_storage)):
    stakeholder = storage.create_stakeholder(body)
    _audit(principal, "create", "stakeholder", stakeholder.id)
    return stakeholder


@router.put("/stakeholders/{stakeholder_id}", response_model=Stakeholder, tags=["Cap table"],
            summary="Edit a stakeholder (partial)")
async def update_stakeholder(stakeholder_id: EntityId, body: StakeholderPatch,
                             principal: Principal = Depends(admin), storage: Storage = Depends(get_storage)):
    stakeholder = _found(storage.update_stakeholder(stakeholder_id, body), "Stakeholder")
    _audit(principal, "update", "stakeholder", stakeholder_id)
    return stakeholder


# ---------------------------------------------------------------------------
# Routes: Timeline
# ---------------------------------------------------------------------------


@router.get("/milestones", response_model=list[Milestone], tags=["Timeline"], summary="List milestones")
async def list_milestones(storage: Storage = Depends(get_storage)):
    return storage.list_milestones()


@router.post("/milestones", response_model=Milestone, status_code=201, tags=["Timeline"],
             summary="Add a milestone")
async def create_milestone(body: MilestoneCreate, principal: Principal = Depends(admin),
                           storage: Storage = Depends(get_storage)):
    milestone = storage.create_milestone(body)
    _audit(principal, "create", "milestone", milestone.id)
    return milestone


@router.put("/milestones/{milestone_id}", response_model=Milestone, tags=["Timeline"],
            summary="Edit a milestone (partial)")
async def update_milestone(milestone_id: EntityId, body: MilestonePatch, principal: Principal = Depends(admin),
                           storage: Storage = Depends(get_storage)):
    milestone = _found(storage.update_milestone(milestone_id, body), "Milestone")
    _audit(principal, "update", "milestone", milestone_id)
    return milestone


@router.delete("/milestones/{milestone_id}", status_code=204, tags=["Timeline"], summary="Delete a milestone")
async def delete_milestone(milestone_id: EntityId, principal: Principal = Depends(admin),
                           storage: Storage = Depends(get_storage)):
    if not storage.delete_milestone(milestone_id):
        raise NotFound("Milestone not found")
    _audit(principal, "delete", "milestone", milestone_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Routes: Documents
# ---------------------------------------------------------------------------


@router.get("/documents", response_model=list[Document], tags=["Documents"],
            summary="List documents, newest first")
async def list_documents(storage: Storage = Depends(get_storage)):
    return storage.list_documents()


@router.post("/documents", response_model=Document, status_code=201, tags=["Documents"],
             summary="Link a document")
async def create_document(body: DocumentCreate, principal: Principal = Depends(admin),
                          storage: Storage = Depends(get_storage)):
    document = storage.create_document(body)
    _audit(principal, "create", "document", document.id)
    return document


@router.delete("/documents/{document_id}", status_code=204, tags=["Documents"], summary="Remove a document")
async def delete_document(document_id: EntityId, principal: Principal = Depends(admin),
                          storage: Storage = Depends(get_storage)):
    if not storage.delete_document(document_id):
        raise NotFound("Document not found")
    _audit(principal, "delete", "document", document_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Routes: Asks and responses
# ---------------------------------------------------------------------------


@router.get("/asks/{ask_id}/responses", response_model=list[AskResponse], tags=["Asks"],
            summary="List responses to an ask, newest first")
async def list_responses(ask_id: EntityId, storage: Storage = Depends(get_storage)):
    _found(storage.get_ask(ask_id), "Ask")
    return storage.list_responses(ask_id)


@router.post("/asks/{ask_id}/responses", response_model=AskResponse, status_code=201, tags=["Asks"],
             summary="Respond to an ask")
async def create_response(ask_id: EntityId, body: ResponseCreate, principal: Principal = Depends(authenticated),
                          storage: Storage = Depends(get_storage)):
    author = body.author or principal.display_name or principal.email
    return storage.create_response(ask_id, author, body.content)


@router.post("/asks/{ask_id}/view", response_model=Success, tags=["Asks"], summary="Count one view of an ask")
async def view_ask(ask_id: EntityId, storage: Storage = Depends(get_storage)):
    if not storage.increment_ask_views(ask_id):
        raise NotFound("Ask not found")
    return Success()


@router.get("/asks", response_model=list[Ask], tags=["Asks"], summary="List asks, newest first")
async def list_asks(storage: Storage = Depends(get_storage)):
    return storage.list_asks()


@router.post("/asks", response_model=Ask, status_code=201, tags=["Asks"], summary="Post an ask")
async def create_ask(body: AskCreate, principal: Principal = Depends(admin),
                     storage: Storage = Depends(get_storage)):
    ask = storage.create_ask(body)
    _audit(principal, "create", "ask", ask.id)
    return ask


@router.put("/asks/{ask_id}", response_model=Ask, tags=["Asks"], summary="Edit an ask (partial)")
async def update_ask(ask_id: EntityId, body: AskPatch, principal: Principal = Depends(admin),
                     storage: Storage = Depends(get_storage)):
    ask = _found(storage.update_ask(ask_id, body), "Ask")
    _audit(principal, "update", "ask", ask_id)
    return ask


@router.delete("/asks/{ask_id}", status_code=204, tags=["Asks"], summary="Delete an ask")
async def delete_ask(ask_id: EntityId, principal: Principal = Depends(admin),
                     storage: Storage = Depends(get_storage)):
    if not storage.delete_ask(ask_id):
        raise NotFound("Ask not found")
    _audit(principal, "delete", "ask", ask_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


async def _portal_error(request: Request, exc: PortalError) -> JSONResponse:
    return JSONResponse({"message": exc.message}, status_code=exc.status_code)


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationError()
    return JSONResponse(
        {"message": error.message, "errors": jsonable_encoder(exc.errors())},
        status_code=error.status_code,
    )


async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return await _portal_error(request, InternalError())


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, storage: Storage | None = None,
               credentials: CredentialStore | None = None) -> FastAPI:
    """Build the API. Missing collaborators are built from the environment at startup.

    A missing ``SESSION_SECRET`` aborts startup with ``RuntimeError``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = settings or Settings.from_env()
        store = storage or build_storage(resolved)
        sessions = SessionManager(store, resolved.session_secret, cookie_secure=resolved.cookie_secure)
        purged = sessions.purge_expired()
        if purged:
            log.info("Purged %d expired sessions", purged)
        if resolved.seed:
            seed_demo_data(store)
        app.state.portal = Portal(
            settings=resolved,
            storage=store,
            authenticator=Authenticator(credentials or default_credential_store(), store),
            sessions=sessions,
        )
        try:
            yield
        finally:
            if storage is None:
                store.close()

    app = FastAPI(
        title="Investor Portal",
        version="0.1.0",
        description=(
            "Investor-relations API. Admins publish metrics, updates, the cap table, "
            "the fundraising timeline, documents and asks; investors read them and "
            "respond to asks. Authentication uses a session cookie set by /api/login."
        ),
        lifespan=lifespan,
    )
    app.include_router(router)
    app.add_exception_handler(PortalError, _portal_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(Exception, _unexpected_error)
    return app


app = create_app()


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    uvicorn.run("portal.app:app", host=os.environ.get("HOST", "127.0.0.1"),
                port=int(os.environ.get("PORT", "5000")))


if __name__ == "__main__":
    main()
