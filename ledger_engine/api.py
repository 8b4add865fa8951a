"""
FastAPI REST API Module

Thin HTTP layer over LedgerSystem: account opening and lookup, transfers,
history and reconciliation queries. Runs on port 8080 by default.
"""

from datetime import datetime, timezone
from typing import Optional, Union
from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware
import uvicorn

from . import __version__
from .accounts import Account
from .amounts import format_amount
from .config import get_config
from .context import RequestContext
from .errors import (
    AlreadyExistsError, ConcurrencyConflictError, IntegrityError, InternalError,
    LedgerError, NotFoundError, ValidationError
)
from .journal import LedgerEntry
from .logging_config import get_logger, log_action, setup_logging
from .system import LedgerSystem


CORRELATION_HEADER = "X-Correlation-ID"

logger = get_logger("ledger.api")


# Pydantic models for API requests
# Amounts and ids are passed through untyped so the engine's own validation
# produces the 400 responses.
class CreateAccountRequest(BaseModel):
    account_id: Optional[Union[str, int]] = Field(None, description="Caller-chosen id, generated if omitted")
    initial_balance: Union[str, int, float] = Field(..., description="Decimal amount, at most 2 fractional digits")


class TransferRequest(BaseModel):
    transfer_id: str = Field(..., description="Idempotency key")
    from_account_id: Union[str, int]
    to_account_id: Union[str, int]
    amount: Union[str, int, float] = Field(..., description="Decimal amount as string")


# Global ledger system instance, created on first use
ledger_system: Optional[LedgerSystem] = None


def get_ledger_system() -> LedgerSystem:
    global ledger_system
    if ledger_system is None:
        ledger_system = LedgerSystem()
    return ledger_system


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Attach a RequestContext to each request and echo its correlation id"""

    def __init__(self, app, header_name: str = CORRELATION_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        ctx = RequestContext.new(request.headers.get(self.header_name), source="api")
        request.state.ctx = ctx
        response = await call_next(request)
        response.headers[self.header_name] = ctx.correlation_id
        return response


def get_request_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "ctx", None)
    return ctx if ctx is not None else RequestContext.new(source="api")


# Create FastAPI app
app = FastAPI(
    title="Ledger Engine API",
    description="Account balances and transfers with double-entry bookkeeping",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[CORRELATION_HEADER],
)
app.add_middleware(CorrelationIdMiddleware)


def _http_error(e: LedgerError, ctx: RequestContext) -> HTTPException:
    """Map a ledger exception onto an HTTP status"""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (AlreadyExistsError, ConcurrencyConflictError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    log_action(
        logger, "error", f"Request failed: {e}", ctx=ctx,
        action="http_error", extra={"error": type(e).__name__}
    )
    if isinstance(e, (IntegrityError, InternalError)):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")


def _account_body(account: Account) -> dict:
    return {
        "id": account.id,
        "balance": format_amount(account.balance),
        "version": account.version,
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat()
    }


def _entry_body(entry: LedgerEntry) -> dict:
    return {
        "id": entry.id,
        "transfer_id": entry.transfer_id,
        "account_id": entry.account_id,
        "amount": format_amount(entry.amount),
        "kind": entry.kind.value,
        "created_at": entry.created_at.isoformat()
    }


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Account Endpoints
# Handlers are sync so FastAPI runs them in its threadpool; account lock
# waits must not block the event loop.
@app.post("/accounts", status_code=status.HTTP_201_CREATED)
def create_account(
    request: CreateAccountRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    ctx: RequestContext = Depends(get_request_context)
):
    """Open an account with an initial balance"""
    try:
        account = system.create_account(request.initial_balance, request.account_id, ctx)
    except LedgerError as e:
        raise _http_error(e, ctx) from e
    return _account_body(account)


@app.get("/accounts/{account_id}")
def get_account(
    account_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    ctx: RequestContext = Depends(get_request_context)
):
    """Get account by ID"""
    try:
        account = system.get_account(account_id, ctx)
    except LedgerError as e:
        raise _http_error(e, ctx) from e
    return _account_body(account)


@app.get("/accounts/{account_id}/entries")
def get_account_entries(
    account_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    ctx: RequestContext = Depends(get_request_context)
):
    """Account history, newest first"""
    try:
        entries = system.entries_for_account(account_id, newest_first=True)
    except LedgerError as e:
        raise _http_error(e, ctx) from e
    return {
        "account_id": account_id,
        "entries": [_entry_body(entry) for entry in entries]
    }


@app.get("/accounts/{account_id}/reconciliation")
def reconcile_account(
    account_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    ctx: RequestContext = Depends(get_request_context)
):
    """Compare the account balance with its journal"""
    try:
        report = system.reconcile_account(account_id, ctx)
    except LedgerError as e:
        raise _http_error(e, ctx) from e
    return report.to_dict()


# Transfer Endpoints
@app.post("/ledger/transfer")
def apply_transfer(
    request: TransferRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    ctx: RequestContext = Depends(get_request_context)
):
    """
    Apply a transfer exactly once. Insufficient funds is a 200 response
    with success false.
    """
    try:
        result = system.apply_transfer(
            request.transfer_id, request.from_account_id,
            request.to_account_id, request.amount, ctx
        )
    except LedgerError as e:
        raise _http_error(e, ctx) from e
    return result.to_dict()


@app.get("/ledger/transfers/{transfer_id}/entries")
def get_transfer_entries(
    transfer_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Entries of one transfer with its balance check"""
    entries = system.entries_for_transfer(transfer_id)
    return {
        "transfer_id": transfer_id,
        "balanced": system.is_transfer_balanced(transfer_id),
        "entries": [_entry_body(entry) for entry in entries]
    }


@app.get("/")
def root():
    """Root endpoint with system information"""
    return {
        "system": "Ledger Engine",
        "version": __version__,
        "description": "Account balances and transfers with double-entry bookkeeping",
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "accounts": "/accounts",
            "transfers": "/ledger/transfer"
        }
    }


# Run server function
def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "ledger_engine.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
