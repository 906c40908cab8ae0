"""
FastAPI REST API Module

HTTP front end for the ledger: account lookup and lifecycle, deposits,
withdrawals, transfers and history queries. Ledger failures are mapped to
distinct status codes with the user-facing message of their kind.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import uuid
from fastapi import FastAPI, HTTPException, Depends, Header, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .accounts import AccountManager
from .auth import AllowAllAuthorizer, OwnershipAuthorizer, Session, SessionRegistry
from .config import LedgerConfig, get_config
from .errors import ErrorKind, LedgerError, Unauthorized
from .history import HistoryQueryService
from .ledger import Account, LedgerStore, TransactionRecord
from .logging_config import correlation_id_var, setup_logging
from .money import format_amount
from .storage import InMemoryStorage, SQLiteStorage, create_storage
from .transactions import LedgerEngine


# Pydantic models for API requests
class OpenSessionRequest(BaseModel):
    user_id: str = Field(..., description="Identity already authenticated by the front end")


class OpenAccountRequest(BaseModel):
    owner_id: str
    account_number: Optional[str] = None
    initial_deposit: Optional[str] = Field(None, description="Decimal amount as string")
    currency: Optional[str] = None


class DepositRequest(BaseModel):
    account: str = Field(..., description="Account identifier or account number")
    amount: str = Field(..., description="Decimal amount as string, e.g. '1,500.00'")
    description: str = ""


class WithdrawRequest(BaseModel):
    account: str = Field(..., description="Account identifier or account number")
    amount: str = Field(..., description="Decimal amount as string")
    description: str = ""


class TransferRequest(BaseModel):
    from_account: str
    to_account: str
    amount: str = Field(..., description="Decimal amount as string")
    description: str = ""


STATUS_BY_KIND = {
    ErrorKind.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.SAME_ACCOUNT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_PAGE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorKind.ACCOUNT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ACCOUNT_INACTIVE: status.HTTP_409_CONFLICT,
    ErrorKind.INSUFFICIENT_FUNDS: status.HTTP_409_CONFLICT,
    ErrorKind.DUPLICATE_ACCOUNT: status.HTTP_409_CONFLICT,
    ErrorKind.STORAGE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


# Ledger System Context
class LedgerSystem:
    """Ledger components wired from configuration"""

    def __init__(self, config: Optional[LedgerConfig] = None, use_sqlite: Optional[bool] = None):
        self.config = config or get_config()

        # Initialize storage
        if use_sqlite is None:
            self.storage = create_storage(self.config)
        elif use_sqlite:
            self.storage = SQLiteStorage(self.config.database_path)
        else:
            self.storage = InMemoryStorage()

        timeout = self.config.atomic_timeout_seconds
        self.store = LedgerStore(self.storage)
        self.sessions = SessionRegistry(self.config.session_timeout_minutes)
        if self.config.auth_enabled:
            self.authorizer = OwnershipAuthorizer(self.store)
        else:
            self.authorizer = AllowAllAuthorizer()
        self.engine = LedgerEngine(self.store, self.authorizer, timeout=timeout)
        self.history = HistoryQueryService(self.store, page_size=self.config.history_page_size)
        self.accounts = AccountManager(
            self.store,
            default_currency=self.config.default_currency,
            account_number_length=self.config.account_number_length,
            timeout=timeout
        )


# Global ledger system instance, built on first use
ledger_system: Optional[LedgerSystem] = None


def get_ledger_system() -> LedgerSystem:
    global ledger_system
    if ledger_system is None:
        ledger_system = LedgerSystem()
    return ledger_system


def get_session(
    x_session_id: Optional[str] = Header(None),
    system: LedgerSystem = Depends(get_ledger_system)
) -> Optional[Session]:
    """Resolve the caller session when authorization is enabled"""
    if not system.config.auth_enabled:
        return None
    session = system.sessions.get(x_session_id)
    if session is None:
        raise Unauthorized("Missing or expired session")
    return session


def _require_access(system: LedgerSystem, session: Optional[Session], account_ref: str) -> None:
    if not system.authorizer.is_authorized(session, account_ref):
        raise Unauthorized(f"Session may not read account {account_ref}")


def account_view(account: Account) -> Dict[str, Any]:
    return {
        "account_id": account.id,
        "account_number": account.account_number,
        "owner_id": account.owner_id,
        "balance": str(account.balance),
        "display_balance": format_amount(account.balance, account.currency),
        "currency": account.currency,
        "is_active": account.is_active,
        "created_at": account.created_at.isoformat(),
    }


def record_view(record: TransactionRecord) -> Dict[str, Any]:
    return {
        "transaction_id": record.id,
        "sequence": record.sequence,
        "account_id": record.account_id,
        "kind": record.kind.value,
        "amount": str(record.amount),
        "balance_after": str(record.balance_after),
        "description": record.description,
        "counterparty_account_id": record.counterparty_account_id,
        "created_at": record.created_at.isoformat(),
    }


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Bank Ledger API",
        description="Atomic deposits, withdrawals and transfers with an append-only history",
        version="1.0.0",
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=STATUS_BY_KIND[exc.kind], content=exc.to_dict())

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        """Tag every log record of a request with its X-Request-Id"""
        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        token = correlation_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)
        response.headers["X-Request-Id"] = request_id
        return response

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "service": "bank_ledger", "version": "1.0.0"}

    @app.post("/sessions", status_code=status.HTTP_201_CREATED)
    def open_session(
        request: OpenSessionRequest,
        system: LedgerSystem = Depends(get_ledger_system)
    ):
        """Open a session for a user the front end has authenticated"""
        session = system.sessions.open(request.user_id)
        return {
            "session_id": session.session_id,
            "user_id": session.user_id,
            "expires_at": session.expires_at.isoformat() if session.expires_at else None,
        }

    @app.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
    def close_session(session_id: str, system: LedgerSystem = Depends(get_ledger_system)):
        """End a session"""
        if not system.sessions.close(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/accounts", status_code=status.HTTP_201_CREATED)
    def open_account(
        request: OpenAccountRequest,
        system: LedgerSystem = Depends(get_ledger_system),
        session: Optional[Session] = Depends(get_session)
    ):
        """Open an account, optionally with an initial deposit"""
        if session is not None and session.user_id != request.owner_id:
            raise Unauthorized(
                f"Session user {session.user_id} may not open accounts for {request.owner_id}"
            )
        account = system.accounts.open_account(
            owner_id=request.owner_id,
            account_number=request.account_number,
            initial_deposit=request.initial_deposit,
            currency=request.currency
        )
        return account_view(account)

    @app.get("/accounts/{account_ref}")
    def get_account(
        account_ref: str,
        system: LedgerSystem = Depends(get_ledger_system),
        session: Optional[Session] = Depends(get_session)
    ):
        """Get account details and balance"""
        account = system.engine.get_account(account_ref)
        _require_access(system, session, account_ref)
        return account_view(account)

    @app.post("/accounts/{account_ref}/deactivate")
    def deactivate_account(
        account_ref: str,
        system: LedgerSystem = Depends(get_ledger_system),
        session: Optional[Session] = Depends(get_session)
    ):
        """Deactivate an account"""
        _require_access(system, session, account_ref)
        return account_view(system.accounts.deactivate_account(account_ref))

    @app.post("/accounts/{account_ref}/activate")
    def activate_account(
        account_ref: str,
        system: LedgerSystem = Depends(get_ledger_system),
        session: Optional[Session] = Depends(get_session)
    ):
        """Reactivate an account"""
        _require_access(system, session, account_ref)
        return account_view(system.accounts.reactivate_account(account_ref))

    @app.get("/accounts/{account_ref}/transactions")
    def list_transactions(
        account_ref: str,
        kind: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        system: LedgerSystem = Depends(get_ledger_system),
        session: Optional[Session] = Depends(get_session)
    ):
        """Transaction history, most recent first, with optional filters and paging"""
        _require_access(system, session, account_ref)
        try:
            records = system.history.by_kind(account_ref, kind)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown transaction kind: {kind}")

        if start is not None or end is not None:
            window = {r.id for r in system.history.between(account_ref, start, end)}
            records = [r for r in records if r.id in window]

        if page is not None:
            records = system.history.paginate(records, page, page_size)

        return {"account": account_ref, "transactions": [record_view(r) for r in records]}

    @app.get("/accounts/{account_ref}/export")
    def export_transactions(
        account_ref: str,
        system: LedgerSystem = Depends(get_ledger_system),
        session: Optional[Session] = Depends(get_session)
    ):
        """Full history as a CSV download"""
        _require_access(system, session, account_ref)
        content = system.history.render_csv(account_ref)
        return Response(
            content=content,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{account_ref}.csv"'}
        )

    @app.get("/accounts/{account_ref}/reconciliation")
    def reconcile_account(
        account_ref: str,
        system: LedgerSystem = Depends(get_ledger_system),
        session: Optional[Session] = Depends(get_session)
    ):
        """Replay the account's records against its stored balance"""
        _require_access(system, session, account_ref)
        result = system.history.reconcile(account_ref)
        return {
            "account_id": result.account_id,
            "stored_balance": str(result.stored_balance),
            "replayed_balance": str(result.replayed_balance),
            "record_count": result.record_count,
            "balanced": result.is_balanced,
        }

    @app.post("/transactions/deposit")
    def deposit(
        request: DepositRequest,
        system: LedgerSystem = Depends(get_ledger_system),
        session: Optional[Session] = Depends(get_session)
    ):
        """Make a deposit"""
        record = system.engine.deposit(request.account, request.amount, request.description, session)
        return {"message": "Deposit processed successfully", "transaction": record_view(record)}

    @app.post("/transactions/withdraw")
    def withdraw(
        request: WithdrawRequest,
        system: LedgerSystem = Depends(get_ledger_system),
        session: Optional[Session] = Depends(get_session)
    ):
        """Make a withdrawal"""
        record = system.engine.withdraw(request.account, request.amount, request.description, session)
        return {"message": "Withdrawal processed successfully", "transaction": record_view(record)}

    @app.post("/transactions/transfer")
    def transfer(
        request: TransferRequest,
        system: LedgerSystem = Depends(get_ledger_system),
        session: Optional[Session] = Depends(get_session)
    ):
        """Make a transfer between accounts"""
        out_record, in_record = system.engine.transfer(
            request.from_account, request.to_account, request.amount,
            request.description, session
        )
        return {
            "message": "Transfer processed successfully",
            "transfer_out": record_view(out_record),
            "transfer_in": record_view(in_record),
        }

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "bank_ledger.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
