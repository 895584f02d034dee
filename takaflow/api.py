"""
FastAPI REST API Module

HTTP surface for the transfer core: registration, login, transfers and
transaction history. Typed errors from the core are mapped to status codes
by the exception handlers registered in ``create_app``. Route handlers are
plain functions so FastAPI runs them in its threadpool, one request per
worker thread, while storage calls block.
"""

from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
import uvicorn

from . import __version__
from .accounts import Account, AccountAlreadyExistsError, Role
from .auth import Identity
from .config import get_config
from .errors import AuthError, TransferError
from .ledger import TransactionRecord
from .logging_config import setup_logging
from .system import TakaflowSystem


# Pydantic models for API requests
class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., alias="userName")
    email: str
    phone: str = Field(..., alias="phoneNum")
    role: Role = Role.CUSTOMER
    pin: str
    photo_url: Optional[str] = Field(None, alias="photoUrl")


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identifier: str = Field(..., alias="emailOrPhone")
    pin: Union[str, int]


class TransferRequest(BaseModel):
    receiver: str = Field(..., description="Receiver email or phone number")
    # Left untyped so malformed amounts reach the engine's own validation
    amount: Any = None
    pin: Union[str, int]


def account_payload(account: Account) -> Dict[str, Any]:
    """Public view of an account (never includes PIN material)"""
    return {
        "id": account.id,
        "name": account.name,
        "email": account.email,
        "phone": account.phone,
        "role": account.role.value,
        "status": account.status.value,
        "balance": account.balance,
        "photo_url": account.photo_url,
        "created_at": account.created_at.isoformat()
    }


def record_payload(record: TransactionRecord) -> Dict[str, Any]:
    payload = record.to_dict()
    payload.pop("id", None)
    return payload


def get_system(request: Request) -> TakaflowSystem:
    return request.app.state.system


def get_identity(
    authorization: Optional[str] = Header(None),
    system: TakaflowSystem = Depends(get_system)
) -> Identity:
    """Dependency that runs the authorization gate"""
    return system.gate.authenticate(authorization)


def create_app(system: Optional[TakaflowSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Takaflow Transfer API",
        description="PIN-authorized balance transfers with an append-only transaction log",
        version=__version__
    )
    app.state.system = system or TakaflowSystem()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TransferError)
    async def transfer_error_handler(request: Request, exc: TransferError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": "error", "error": type(exc).__name__, "message": exc.message}
        )

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": "error", "message": exc.message}
        )

    @app.get("/")
    def root():
        return {"message": "taka is flowing"}

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "takaflow",
            "version": __version__
        }

    @app.post("/register", status_code=status.HTTP_201_CREATED)
    def register(request: RegisterRequest, system: TakaflowSystem = Depends(get_system)):
        """Register a new account; it stays pending until approved"""
        try:
            account = system.accounts.register(
                name=request.name,
                email=request.email,
                phone=request.phone,
                role=request.role,
                pin=request.pin,
                photo_url=request.photo_url
            )
        except AccountAlreadyExistsError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return account_payload(account)

    @app.post("/login")
    def login(request: LoginRequest, system: TakaflowSystem = Depends(get_system)):
        """Exchange email/phone and PIN for a bearer token"""
        token, account = system.gate.login(request.identifier, request.pin)
        return {"status": "success", "token": token, "user": account_payload(account)}

    @app.post("/transfer")
    def transfer(
        request: TransferRequest,
        identity: Identity = Depends(get_identity),
        system: TakaflowSystem = Depends(get_system)
    ):
        """Send money to another customer"""
        record = system.engine.transfer(
            caller_id=identity.account_id,
            receiver_identifier=request.receiver,
            amount=request.amount,
            pin=request.pin
        )
        return {"status": "success", "transaction": record_payload(record)}

    @app.get("/transactions")
    def list_transactions(
        identity: Identity = Depends(get_identity),
        system: TakaflowSystem = Depends(get_system)
    ) -> List[Dict[str, Any]]:
        """Caller's most recent transactions, newest first"""
        return [record_payload(r) for r in system.engine.history(identity)]

    @app.get("/transactions/{transaction_id}")
    def get_transaction(
        transaction_id: str,
        identity: Identity = Depends(get_identity),
        system: TakaflowSystem = Depends(get_system)
    ):
        record = system.engine.get_transaction(identity, transaction_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Transaction not found")
        return record_payload(record)

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        create_app(),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level="info"
    )
