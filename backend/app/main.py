from __future__ import annotations

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from backend.app.auth import AuthContext, require_roles
from backend.app.models import (
    BatchSendRequest,
    BatchSendResponse,
    ContactCreateRequest,
    ContactCreateResponse,
    EmailCountStatsItem,
    EmailCreateRequest,
    EmailItem,
    EmailRecord,
    EmailType,
    PipedriveWebhookRequest,
    PlainTextRequest,
    PlainTextResult,
    ReadTrackingResponse,
    SendStartResponse,
    SendTestEmailRequest,
    TransportTestRequest,
    TransportTestResponse,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import SqlPersistence
from backend.app.services.batch_progress import (
    SEND_PROGRESS_SLOT,
    BatchProgressTracker,
    ProgressState,
    SessionProgressStore,
)
from backend.app.services.crm_events import (
    CrmImportError,
    error_status_code,
    process_pipedrive_event,
)
from backend.app.services.mailer import EmailBatchSender, send_test_message
from backend.app.services.plaintext import html_to_text
from backend.app.services.transports import (
    Transport,
    TransportError,
    UnknownTransportError,
    build_transport,
)
from backend.app.services.webhooks import CredentialVerificationError, verify_basic_credentials
from backend.app.sessions import Session, SessionStore
from backend.app.settings import Settings, load_settings
from backend.app.store import InMemoryStore, StoreConflictError, StoreNotFoundError


def create_app() -> FastAPI:
    app = FastAPI(title="Campaign Sender API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = SqlPersistence(settings.database_url) if settings.persistence_enabled else None
    app.state.store = InMemoryStore(persistence=persistence)
    app.state.sessions = SessionStore(
        persistence=persistence,
        ttl_seconds=settings.session_ttl_seconds,
    )
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()
    app.state.transport = build_transport(
        settings.mailer_transport,
        settings.transport_settings(),
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_transport(request: Request) -> Transport:
    return request.app.state.transport


def get_session(request: Request, response: Response) -> Session:
    settings = get_settings(request)
    sessions: SessionStore = request.app.state.sessions
    session = sessions.open(request.cookies.get(settings.session_cookie_name))
    if session.is_new:
        response.set_cookie(
            settings.session_cookie_name,
            session.session_id,
            httponly=True,
            samesite="lax",
        )
    return session


def email_item(store: InMemoryStore, email: EmailRecord) -> EmailItem:
    return EmailItem(
        email_id=email.id,
        name=email.name,
        subject=email.subject,
        email_type=email.email_type,
        is_published=email.is_published,
        list_ids=email.list_ids,
        sent_count=email.sent_count,
        read_count=email.read_count,
        pending_count=store.pending_count(email) if email.email_type == EmailType.list else 0,
    )


def count_stats_item(store: InMemoryStore, email: EmailRecord) -> dict[str, Any]:
    pending = store.pending_count(email) if email.email_type == EmailType.list else 0
    return EmailCountStatsItem(
        id=email.id,
        pending=pending,
        sent_count=email.sent_count,
        read_count=email.read_count,
        read_percent=store.read_percentage(email),
    ).model_dump(by_alias=True)


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.post("/contacts", response_model=ContactCreateResponse)
    def create_contact(
        payload: ContactCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> ContactCreateResponse:
        store = get_store(request)
        try:
            contact = store.create_contact(payload)
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return ContactCreateResponse(contact_id=contact.id)

    @router.post("/emails", response_model=EmailItem)
    def create_email(
        payload: EmailCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> EmailItem:
        store = get_store(request)
        email = store.create_email(payload)
        return email_item(store, email)

    @router.get("/emails/{email_id}", response_model=EmailItem)
    def get_email(
        email_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> EmailItem:
        store = get_store(request)
        try:
            email = store.get_email(email_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return email_item(store, email)

    @router.post("/emails/{email_id}/send", response_model=SendStartResponse)
    def start_send(
        email_id: str,
        request: Request,
        session: Session = Depends(get_session),
        _: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> SendStartResponse:
        store = get_store(request)
        settings = get_settings(request)
        try:
            email = store.get_email(email_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        if email.email_type != EmailType.list:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="only list emails can be sent in batches",
            )
        if not email.is_enabled():
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="email is not published",
            )
        progress_store = SessionProgressStore(session)
        current = progress_store.load(SEND_PROGRESS_SLOT)
        if current and current.active:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="a batch send is already in progress for this session",
            )
        pending = store.pending_count(email)
        progress_store.save(SEND_PROGRESS_SLOT, ProgressState(total_pending=pending))
        return SendStartResponse(
            email_id=email.id,
            pending=pending,
            batchlimit=settings.default_batch_limit,
        )

    @router.post(
        "/ajax/email/send-batch",
        response_model=BatchSendResponse,
        response_model_exclude_none=True,
    )
    def send_batch(
        payload: BatchSendRequest,
        request: Request,
        session: Session = Depends(get_session),
        _: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> BatchSendResponse:
        store = get_store(request)
        settings = get_settings(request)
        sender = EmailBatchSender(
            store=store,
            transport=get_transport(request),
            from_email=settings.mailer_from_email,
            from_name=settings.mailer_from_name,
        )
        tracker = BatchProgressTracker(
            store=SessionProgressStore(session),
            lookup=store.find_email,
            sender=sender,
            default_batch_limit=settings.default_batch_limit,
            lease_ttl_seconds=settings.send_lease_ttl_seconds,
            metrics=get_metrics(request),
        )
        snapshot = tracker.poll(payload.id, payload.pending, payload.batchlimit)
        return BatchSendResponse.model_validate(snapshot.to_dict())

    @router.get("/ajax/email/count-stats")
    def email_count_stats(
        request: Request,
        id: Optional[str] = None,
        ids: Optional[list[str]] = Query(default=None),
        _: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> dict[str, Any]:
        store = get_store(request)
        # legacy callers pass a single id and get the bare item back
        requested = ids or ([id] if id else [])
        items = []
        for email_id in requested:
            email = store.find_email(email_id)
            if email:
                items.append(count_stats_item(store, email))
        if id and not ids and items:
            return items[0]
        return {"success": 1, "stats": items}

    @router.post("/ajax/email/plaintext", response_model=PlainTextResult)
    def generate_plain_text(
        payload: PlainTextRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> PlainTextResult:
        base_url = str(request.base_url).rstrip("/")
        return PlainTextResult(text=html_to_text(payload.custom, base_url=base_url))

    @router.post("/ajax/email/test-transport", response_model=TransportTestResponse)
    def test_transport(
        payload: TransportTestRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("admin")),
    ) -> TransportTestResponse:
        settings = get_settings(request)
        transport_settings: dict[str, Any] = {
            "host": payload.host,
            "port": payload.port,
            "encryption": payload.encryption.value,
            "user": payload.user,
            "password": payload.password or settings.mailer_password,
            "amazon_region": payload.amazon_region,
            "amazon_other_region": payload.amazon_other_region,
            "timeout": 10,
        }
        try:
            transport = build_transport(payload.transport, transport_settings)
        except UnknownTransportError as exc:
            return TransportTestResponse(success=0, message=str(exc))
        result = transport.verify()
        return TransportTestResponse(success=1 if result.success else 0, message=result.message)

    @router.post("/ajax/email/send-test", response_model=TransportTestResponse)
    def send_test_email(
        payload: SendTestEmailRequest,
        request: Request,
        context: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> TransportTestResponse:
        settings = get_settings(request)
        to_address = payload.to_address or context.email
        if not to_address:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="no recipient address for test email",
            )
        try:
            send_test_message(
                transport=get_transport(request),
                from_email=settings.mailer_from_email,
                from_name=settings.mailer_from_name,
                to_address=to_address,
                to_name=payload.to_name,
            )
        except TransportError as exc:
            return TransportTestResponse(success=0, message=str(exc))
        return TransportTestResponse(success=1, message="success")

    @router.post("/emails/stats/{stat_id}/read", response_model=ReadTrackingResponse)
    def track_read(stat_id: str, request: Request) -> ReadTrackingResponse:
        store = get_store(request)
        try:
            stat = store.mark_read(stat_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return ReadTrackingResponse(
            stat_id=stat.id,
            is_read=stat.is_read,
            date_read_utc=stat.date_read_utc,
        )

    @router.post("/plugin/pipedrive/webhook")
    async def pipedrive_webhook(request: Request) -> JSONResponse:
        store = get_store(request)
        settings = get_settings(request)
        if not settings.pipedrive_enabled:
            return JSONResponse({"status": "Integration turned off"})
        try:
            verify_basic_credentials(
                request.headers,
                settings.pipedrive_user,
                settings.pipedrive_password,
            )
        except CredentialVerificationError as exc:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=str(exc),
                headers={"WWW-Authenticate": "Basic"},
            ) from exc

        raw_body = await request.body()
        try:
            payload = PipedriveWebhookRequest.model_validate(json.loads(raw_body.decode("utf-8")))
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid json payload",
            ) from exc

        try:
            result = process_pipedrive_event(store=store, payload=payload)
        except CrmImportError as exc:
            return JSONResponse(
                {"status": "error", "message": str(exc)},
                status_code=error_status_code(exc),
            )
        return JSONResponse({"status": result})

    return router


app = create_app()
