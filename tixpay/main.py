import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import sessionmaker

from tixpay.config import Settings, settings as default_settings
from tixpay.db import SessionLocal, ping_db
from tixpay.errors import NotFoundError, TixPayError
from tixpay.metrics import metrics_asgi_app
from tixpay.models import Base
from tixpay.repository import Repository
from tixpay.schemas import (
    BankAccountOut, CheckoutRequest, CheckoutSessionOut, LedgerEntryOut, LedgerSummaryOut, OrderDetail,
)
from tixpay.services.checkout import create_checkout_session
from tixpay.services.gateway import GatewayClient
from tixpay.services.issuance import IssuanceTask, TicketIssuer
from tixpay.services.ledger import summarize_entries
from tixpay.services.mailer import Mailer, mailer_from_settings
from tixpay.services.queue import IssuanceQueue
from tixpay.services.receipts import build_receipt_pdf, receipt_file_name
from tixpay.services.storage import LocalStorage, Storage
from tixpay.services.webhooks import process_webhook, verify_and_settle

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    settings: Settings
    session_factory: sessionmaker
    gateway: GatewayClient
    mailer: Mailer
    storage: Storage
    issuer: TicketIssuer
    queue: IssuanceQueue[IssuanceTask]


def build_services(
    settings: Settings,
    session_factory: sessionmaker,
    gateway: Optional[GatewayClient] = None,
    mailer: Optional[Mailer] = None,
    storage: Optional[Storage] = None,
) -> AppServices:
    gateway = gateway or GatewayClient.from_settings(settings)
    mailer = mailer or mailer_from_settings(settings)
    storage = storage or LocalStorage(
        settings.storage_dir,
        settings.storage_public_url or f"{settings.app_url.rstrip('/')}/static",
    )
    issuer = TicketIssuer(session_factory, storage, mailer, settings)
    return AppServices(
        settings=settings,
        session_factory=session_factory,
        gateway=gateway,
        mailer=mailer,
        storage=storage,
        issuer=issuer,
        queue=IssuanceQueue(issuer),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: AppServices = app.state.services
    # runs once at startup
    Base.metadata.create_all(bind=services.session_factory.kw["bind"])
    services.queue.start()
    yield
    # finish queued issuance before the process goes away
    await run_in_threadpool(services.queue.stop)
    services.gateway.close()


router = APIRouter()


def _services(request: Request) -> AppServices:
    return request.app.state.services


@router.get("/")
def root():
    return {"service": "tixpay", "docs": "/docs"}

@router.get("/healthz")
def healthz(request: Request):
    try:
        ping_db(_services(request).session_factory.kw["bind"])
        return {"ok": True, "db": "up"}
    except Exception:
        logger.exception("database ping failed")
        return {"ok": False, "db": "down"}


@router.post("/payments/initialize", response_model=CheckoutSessionOut, tags=["payments"])
def initialize_payment(payload: CheckoutRequest, request: Request):
    svc = _services(request)
    with svc.session_factory() as db:
        session = create_checkout_session(db, payload, svc.gateway, svc.queue.enqueue, svc.settings)
    return CheckoutSessionOut(
        redirect_url=session.redirect_url,
        reference=session.reference,
        amount=session.amount,
        currency=session.currency,
    )


@router.post("/webhooks/gateway", tags=["payments"])
async def gateway_webhook(request: Request):
    svc = _services(request)
    raw_body = await request.body()
    signature = request.headers.get("x-signature") or request.headers.get("x-paystack-signature")

    def handle():
        with svc.session_factory() as db:
            return process_webhook(db, raw_body, signature, svc.gateway, svc.queue.enqueue, svc.mailer)

    return await run_in_threadpool(handle)


@router.get("/orders/{reference}/receipt", tags=["orders"])
def download_receipt(reference: str, request: Request):
    svc = _services(request)
    with svc.session_factory() as db:
        order = verify_and_settle(db, reference, svc.gateway, svc.queue.enqueue)
        repo = Repository(db)
        organizer = repo.get_organizer(order.organizer_id)
        product = repo.get_product_with_ticket_types(order.product_id)
        if organizer is None or product is None:
            raise NotFoundError("Receipt not found")
        tickets = repo.list_tickets_for_order(order.id)
        pdf = build_receipt_pdf(order, organizer, product, tickets)
        filename = receipt_file_name(order)

    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-store",
        },
    )


@router.get("/orders/{order_id}", response_model=OrderDetail, tags=["orders"])
def get_order(order_id: UUID, request: Request):
    with _services(request).session_factory() as db:
        order = Repository(db).get_order_with_relations(order_id)
        if not order:
            raise NotFoundError("Order not found")
        return OrderDetail.model_validate(order)


@router.get("/orders/{order_id}/ledger", response_model=LedgerEntryOut, tags=["ledger"])
def get_order_ledger(order_id: UUID, request: Request):
    with _services(request).session_factory() as db:
        repo = Repository(db)
        # 404 if order doesn't exist (nicer than returning empty)
        if not repo.get_order_by_id(order_id):
            raise NotFoundError("Order not found")
        entry = repo.get_ledger_entry_for_order(order_id)
        if not entry:
            raise NotFoundError("No ledger entry for this order yet")
        return LedgerEntryOut.model_validate(entry)


@router.get("/organizers/{organizer_id}/ledger/summary", response_model=LedgerSummaryOut, tags=["ledger"])
def get_organizer_ledger_summary(organizer_id: UUID, request: Request):
    with _services(request).session_factory() as db:
        repo = Repository(db)
        if not repo.get_organizer(organizer_id):
            raise NotFoundError("Organizer not found")
        return summarize_entries(organizer_id, repo.list_ledger_entries_for_organizer(organizer_id))


@router.get("/banks/resolve", response_model=BankAccountOut, tags=["payments"])
def resolve_bank_account(request: Request, bank_code: str = Query(...), account_number: str = Query(...)):
    result = _services(request).gateway.resolve_bank_account(bank_code, account_number)
    return BankAccountOut(**result)


async def tixpay_error_handler(request: Request, exc: TixPayError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s %s", type(exc).__name__, request.url.path, exc.message, exc.context)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'][1:]) or 'body'}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": errors or "Invalid request"})


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    gateway: Optional[GatewayClient] = None,
    mailer: Optional[Mailer] = None,
    storage: Optional[Storage] = None,
) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="TixPay Checkout", lifespan=lifespan)
    app.state.services = build_services(
        settings, session_factory or SessionLocal, gateway=gateway, mailer=mailer, storage=storage,
    )
    app.include_router(router)
    app.add_exception_handler(TixPayError, tixpay_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.mount("/metrics", metrics_asgi_app)
    if isinstance(app.state.services.storage, LocalStorage):
        os.makedirs(settings.storage_dir, exist_ok=True)
        app.mount("/static", StaticFiles(directory=settings.storage_dir), name="static")
    return app


app = create_app()
