import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import Owner, bearer_token, resolve_identity
from config import Settings, get_settings
from database import create_db_engine, create_session_factory
from errors import LedgerError
from gemini import GeminiClient
from metrics import MetricsService
from notifications import BackgroundNotifier, build_notifier
from periods import resolve_period
from receipts import ReceiptScanner
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    ActionResult,
    BudgetIn,
    BulkDeleteIn,
    TransactionIn,
    TransactionOut,
    from_cents,
)
from services import AccountService, BudgetService, TransactionService

logger = logging.getLogger(__name__)


def ok(data: object = None) -> ActionResult:
    return ActionResult(success=True, data=jsonable_encoder(data))


def create_app(
    settings: Optional[Settings] = None, *, start_scheduler: bool = True
) -> FastAPI:
    settings = settings or get_settings()
    engine = create_db_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    notifier = build_notifier(settings)
    client = GeminiClient.from_settings(settings)

    app = FastAPI(title="finledger")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.scanner = ReceiptScanner(client, max_bytes=settings.receipt_max_bytes)
    app.state.notifier = notifier
    app.state.scheduler = SchedulerManager(
        session_factory,
        settings,
        notifier,
        client if settings.gemini_api_key else None,
    )

    if start_scheduler:

        @app.on_event("startup")
        def startup_event():
            app.state.scheduler.start()

        @app.on_event("shutdown")
        def shutdown_event():
            app.state.scheduler.stop()
            if isinstance(app.state.notifier, BackgroundNotifier):
                app.state.notifier.shutdown()

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(
            status_code=exc.status_code,
            content=ActionResult(success=False, error=exc.message).model_dump(),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content=ActionResult(success=False, error=messages).model_dump(),
        )

    _register_routes(app)
    return app


def get_db(request: Request):
    db: Session = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def current_identity(
    request: Request, authorization: Optional[str] = Header(default=None)
) -> Owner:
    settings: Settings = request.app.state.settings
    return resolve_identity(
        bearer_token(authorization), settings.auth_secret, settings.auth_max_age_secs
    )


def current_owner(identity: Owner = Depends(current_identity)) -> str:
    return identity.id


def _register_routes(app: FastAPI) -> None:
    @app.post("/accounts")
    def create_account(
        payload: AccountIn,
        identity: Owner = Depends(current_identity),
        db: Session = Depends(get_db),
    ):
        account = AccountService(db, identity.id).create(
            payload, email=identity.email
        )
        return ok(AccountOut.from_model(account))

    @app.get("/accounts")
    def list_accounts(
        owner: str = Depends(current_owner), db: Session = Depends(get_db)
    ):
        rows = AccountService(db, owner).list()
        return ok(
            [AccountOut.from_model(acc, transaction_count=n) for acc, n in rows]
        )

    @app.get("/accounts/{account_id}")
    def get_account(
        account_id: int,
        owner: str = Depends(current_owner),
        db: Session = Depends(get_db),
    ):
        account, txns = AccountService(db, owner).get_with_transactions(account_id)
        data = AccountOut.from_model(account, transaction_count=len(txns)).model_dump()
        data["transactions"] = [TransactionOut.from_model(t) for t in txns]
        return ok(data)

    @app.post("/accounts/{account_id}/default")
    def set_default_account(
        account_id: int,
        owner: str = Depends(current_owner),
        db: Session = Depends(get_db),
    ):
        account = AccountService(db, owner).set_default(account_id)
        return ok(AccountOut.from_model(account))

    @app.post("/transactions")
    def create_transaction(
        payload: TransactionIn,
        owner: str = Depends(current_owner),
        db: Session = Depends(get_db),
    ):
        txn = TransactionService(db, owner).create(payload)
        return ok(TransactionOut.from_model(txn))

    @app.get("/transactions")
    def list_transactions(
        account_id: Optional[int] = None,
        owner: str = Depends(current_owner),
        db: Session = Depends(get_db),
    ):
        txns = TransactionService(db, owner).list(account_id)
        return ok([TransactionOut.from_model(t) for t in txns])

    @app.get("/transactions/{transaction_id}")
    def get_transaction(
        transaction_id: int,
        owner: str = Depends(current_owner),
        db: Session = Depends(get_db),
    ):
        return ok(TransactionOut.from_model(TransactionService(db, owner).get(transaction_id)))

    @app.put("/transactions/{transaction_id}")
    def update_transaction(
        transaction_id: int,
        payload: TransactionIn,
        owner: str = Depends(current_owner),
        db: Session = Depends(get_db),
    ):
        txn = TransactionService(db, owner).update(transaction_id, payload)
        return ok(TransactionOut.from_model(txn))

    @app.post("/transactions/bulk-delete")
    def bulk_delete_transactions(
        payload: BulkDeleteIn,
        owner: str = Depends(current_owner),
        db: Session = Depends(get_db),
    ):
        deleted = TransactionService(db, owner).bulk_delete(payload.transaction_ids)
        return ok({"deleted": deleted})

    @app.get("/budget")
    def get_budget(
        request: Request,
        account_id: Optional[int] = None,
        owner: str = Depends(current_owner),
        db: Session = Depends(get_db),
    ):
        status = BudgetService(
            db, owner, timezone=request.app.state.settings.timezone
        ).get_current(account_id)
        budget = status.budget
        return ok(
            {
                "budget": (
                    {
                        "amount": from_cents(budget.amount_cents),
                        "updated_at": budget.updated_at,
                        "last_alert_sent": budget.last_alert_sent,
                    }
                    if budget
                    else None
                ),
                "account_id": status.account.id if status.account else None,
                "current_expenses": from_cents(status.current_expenses_cents),
            }
        )

    @app.put("/budget")
    def update_budget(
        payload: BudgetIn,
        identity: Owner = Depends(current_identity),
        db: Session = Depends(get_db),
    ):
        budget = BudgetService(db, identity.id).upsert(
            payload, email=identity.email
        )
        return ok({"amount": from_cents(budget.amount_cents)})

    @app.post("/receipts/scan")
    async def scan_receipt(
        request: Request,
        file: UploadFile = File(...),
        owner: str = Depends(current_owner),
    ):
        image = await file.read()
        scanner: ReceiptScanner = request.app.state.scanner
        receipt = await run_in_threadpool(
            scanner.scan, image, file.content_type or "image/jpeg"
        )
        return ok(receipt)

    @app.get("/dashboard")
    def dashboard(
        request: Request,
        period: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        account_id: Optional[int] = None,
        owner: str = Depends(current_owner),
        db: Session = Depends(get_db),
    ):
        timezone = request.app.state.settings.timezone
        selected = resolve_period(period, start, end, timezone=timezone)
        accounts = AccountService(db, owner).list()
        recent = TransactionService(db, owner).recent(limit=5)
        stats = MetricsService(db, owner, timezone=timezone).aggregate(
            selected, account_id
        )
        return ok(
            {
                "accounts": [
                    AccountOut.from_model(acc, transaction_count=n)
                    for acc, n in accounts
                ],
                "recent_transactions": [TransactionOut.from_model(t) for t in recent],
                "period": {
                    "slug": selected.slug,
                    "start": selected.start,
                    "end": selected.end,
                },
                "stats": {
                    "total_income": from_cents(stats.total_income),
                    "total_expenses": from_cents(stats.total_expenses),
                    "net": from_cents(stats.net),
                    "by_category": {
                        category: from_cents(cents)
                        for category, cents in stats.by_category.items()
                    },
                    "transaction_count": stats.transaction_count,
                },
            }
        )


app = create_app()
