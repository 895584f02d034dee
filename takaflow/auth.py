"""
Authorization Gate Module

Turns a bearer credential into a typed Identity before a request reaches
the transfer engine. Tokens are HS256 JWTs carrying the account id and role.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import jwt

from .accounts import AccountStore, Account, Role
from .config import TakaflowConfig, get_config
from .errors import AuthError
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class Identity:
    """A verified caller"""
    account_id: str
    role: Role


class TokenService:
    """Issues and verifies session tokens"""

    def __init__(self, secret: str, algorithm: str = "HS256", expiry_hours: int = 1):
        self.secret = secret
        self.algorithm = algorithm
        self.expiry_hours = expiry_hours

    @classmethod
    def from_config(cls, config: Optional[TakaflowConfig] = None) -> 'TokenService':
        config = config or get_config()
        return cls(config.jwt_secret, config.jwt_algorithm, config.jwt_expiry_hours)

    def issue(self, identity: Identity) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": identity.account_id,
            "role": identity.role.value,
            "iat": now,
            "exp": now + timedelta(hours=self.expiry_hours)
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Identity:
        """
        Decode a token into an Identity

        Raises:
            AuthError: If the token is expired, malformed or badly signed
        """
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthError("Token expired")
        except jwt.InvalidTokenError:
            raise AuthError("Invalid token")

        account_id = payload.get("sub")
        try:
            role = Role(payload.get("role"))
        except ValueError:
            raise AuthError("Invalid token")
        if not account_id:
            raise AuthError("Invalid token")

        return Identity(account_id=account_id, role=role)


class AuthorizationGate:
    """
    Resolves the caller once per request; the transfer engine trusts the
    Identity it produces without re-checking.
    """

    def __init__(self, accounts: AccountStore, tokens: TokenService):
        self.accounts = accounts
        self.tokens = tokens
        self.logger = get_logger("takaflow.auth")

    def authenticate(self, authorization: Optional[str]) -> Identity:
        """
        Verify an ``Authorization: Bearer <token>`` header value

        Raises:
            AuthError: 401 for missing or bad credentials, 403 when the
                account exists but is not active
        """
        if not authorization:
            raise AuthError("unauthorized access")

        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthError("unauthorized access")

        identity = self.tokens.verify(token.strip())

        account = self.accounts.get(identity.account_id)
        if account is None:
            raise AuthError("unauthorized access")
        if not account.is_active:
            raise AuthError(f"Account is {account.status.value}", status_code=403)

        return Identity(account_id=account.id, role=account.role)

    def login(self, identifier: str, pin: Union[str, int]) -> Tuple[str, Account]:
        """Exchange an email or phone number plus PIN for a session token"""
        account = self.accounts.find_by_contact(identifier)
        if account is None or not account.verify_pin(pin):
            log_action(
                self.logger, "warning", "Login failed",
                action="login_failed", resource="auth"
            )
            raise AuthError("Invalid credentials")

        token = self.tokens.issue(Identity(account_id=account.id, role=account.role))

        log_action(
            self.logger, "info", "Login succeeded",
            user_id=account.id, action="login", resource="auth"
        )
        return token, account
