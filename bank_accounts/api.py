"""
FastAPI REST API Module

Exposes account management, top-up and transfer operations over HTTP.
Domain errors are translated to JSON error bodies with matching status codes.
"""

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
import uvicorn

from . import __version__
from .accounts import AccountService
from .balance import BalanceEngine
from .config import get_config
from .exceptions import (
    AccountNotFound, BalanceOverflow, BankAccountsError, InsufficientFunds,
    InvalidAccountData, InvalidAmount, StorageFailure
)
from .logging_config import get_logger, setup_logging
from .schemas import (
    AccountResponse, CreateAccountRequest, DeletedResponse, ErrorResponse,
    TopUpRequest, TransferRequest, UpdateAccountRequest
)
from .storage import create_store


logger = get_logger("bank_accounts.api")

ERROR_STATUS = {
    AccountNotFound: 404,
    InvalidAmount: 400,
    InvalidAccountData: 400,
    InsufficientFunds: 409,
    BalanceOverflow: 422,
    StorageFailure: 503,
}

ERROR_RESPONSES = {
    code: {"model": ErrorResponse} for code in set(ERROR_STATUS.values())
}


def status_for(error: BankAccountsError) -> int:
    """Map a domain error to an HTTP status code"""
    for error_type, code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return code
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the storage-backed service unless one was injected"""
    owned_store = None
    if app.state.service is None:
        config = get_config()
        setup_logging(config.log_level, config.log_format)
        owned_store = create_store(config)
        app.state.service = AccountService(
            owned_store, BalanceEngine(owned_store, max_balance=config.max_balance)
        )
        logger.info("Using %s storage backend", config.storage_backend)

    yield

    if owned_store is not None:
        owned_store.close()
        app.state.service = None


def get_service(request: Request) -> AccountService:
    return request.app.state.service


def create_app(service: Optional[AccountService] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        service: Pre-built AccountService; when omitted one is built from
            configuration at startup
    """
    app = FastAPI(
        title="Bank Accounts API",
        description="Account records, top-ups and transfers",
        version=__version__,
        lifespan=lifespan
    )
    app.state.service = service

    @app.exception_handler(BankAccountsError)
    async def handle_domain_error(request: Request, exc: BankAccountsError):
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content={"error": str(exc)})

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "bank_accounts",
            "version": __version__
        }

    @app.get("/accounts", response_model=List[AccountResponse])
    def list_accounts(svc: AccountService = Depends(get_service)):
        """List all accounts"""
        return [AccountResponse.from_account(a) for a in svc.list_accounts()]

    @app.post("/accounts", response_model=AccountResponse,
              status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
    def create_account(request: CreateAccountRequest,
                       svc: AccountService = Depends(get_service)):
        """Open a new account"""
        account = svc.create_account(request.first_name, request.last_name)
        return AccountResponse.from_account(account)

    @app.get("/accounts/{account_id}", response_model=AccountResponse,
             responses=ERROR_RESPONSES)
    def get_account(account_id: int, svc: AccountService = Depends(get_service)):
        """Get account details"""
        return AccountResponse.from_account(svc.get_account(account_id))

    @app.patch("/accounts/{account_id}", response_model=AccountResponse,
               responses=ERROR_RESPONSES)
    def update_account(account_id: int, request: UpdateAccountRequest,
                       svc: AccountService = Depends(get_service)):
        """Rename the account holder"""
        account = svc.rename_account(account_id, request.first_name, request.last_name)
        return AccountResponse.from_account(account)

    @app.delete("/accounts/{account_id}", response_model=DeletedResponse,
                responses=ERROR_RESPONSES)
    def delete_account(account_id: int, svc: AccountService = Depends(get_service)):
        """Delete an account"""
        svc.delete_account(account_id)
        return DeletedResponse(deleted=account_id)

    @app.post("/top-up", response_model=AccountResponse, responses=ERROR_RESPONSES)
    def top_up(request: TopUpRequest, svc: AccountService = Depends(get_service)):
        """Credit an account"""
        account = svc.top_up(request.number, request.amount)
        return AccountResponse.from_account(account)

    @app.post("/transfer", response_model=AccountResponse, responses=ERROR_RESPONSES)
    def transfer(request: TransferRequest, svc: AccountService = Depends(get_service)):
        """Move money between two accounts; returns the sender"""
        account = svc.transfer(request.sender_number, request.recipient_number, request.amount)
        return AccountResponse.from_account(account)

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "bank_accounts.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
