"""
Tests for session tokens and the authorization gate
"""

import pytest
import jwt
from datetime import datetime, timezone, timedelta

from takaflow.accounts import AccountStore, Role
from takaflow.auth import Identity, TokenService, AuthorizationGate
from takaflow.errors import AuthError
from takaflow.storage import InMemoryStorage


SECRET = "test-secret"


class TestTokenService:
    """Test token issue and verification"""

    def setup_method(self):
        self.tokens = TokenService(SECRET)

    def test_issue_and_verify(self):
        identity = Identity(account_id="acc_1", role=Role.AGENT)
        token = self.tokens.issue(identity)

        assert self.tokens.verify(token) == identity

    def test_expired_token(self):
        expired = TokenService(SECRET, expiry_hours=-1)
        token = expired.issue(Identity(account_id="acc_1", role=Role.CUSTOMER))

        with pytest.raises(AuthError, match="Token expired"):
            self.tokens.verify(token)

    def test_wrong_secret(self):
        token = TokenService("other-secret").issue(Identity(account_id="acc_1", role=Role.CUSTOMER))

        with pytest.raises(AuthError, match="Invalid token"):
            self.tokens.verify(token)

    def test_garbage_token(self):
        with pytest.raises(AuthError) as exc_info:
            self.tokens.verify("not-a-jwt")
        assert exc_info.value.status_code == 401

    def test_unknown_role_rejected(self):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": "acc_1", "role": "superuser", "iat": now, "exp": now + timedelta(hours=1)},
            SECRET, algorithm="HS256"
        )
        with pytest.raises(AuthError):
            self.tokens.verify(token)

    def test_missing_subject_rejected(self):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"role": "customer", "iat": now, "exp": now + timedelta(hours=1)},
            SECRET, algorithm="HS256"
        )
        with pytest.raises(AuthError):
            self.tokens.verify(token)


class TestAuthorizationGate:
    """Test the request gate"""

    def setup_method(self):
        self.accounts = AccountStore(InMemoryStorage())
        self.tokens = TokenService(SECRET)
        self.gate = AuthorizationGate(self.accounts, self.tokens)

        account = self.accounts.register(
            name="Rahim", email="rahim@example.com", phone="01700000001",
            role=Role.CUSTOMER, pin="12345"
        )
        self.account = self.accounts.activate(account.id, initial_balance=100)

    def bearer(self, account_id=None, role=Role.CUSTOMER):
        identity = Identity(account_id=account_id or self.account.id, role=role)
        return f"Bearer {self.tokens.issue(identity)}"

    def test_authenticate_active_account(self):
        identity = self.gate.authenticate(self.bearer())
        assert identity == Identity(account_id=self.account.id, role=Role.CUSTOMER)

    def test_role_comes_from_stored_account(self):
        """Test a token claiming a different role does not elevate the caller"""
        identity = self.gate.authenticate(self.bearer(role=Role.ADMIN))
        assert identity.role == Role.CUSTOMER

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer   ", "Basic abc", "token-only"])
    def test_missing_or_malformed_header(self, header):
        with pytest.raises(AuthError) as exc_info:
            self.gate.authenticate(header)
        assert exc_info.value.status_code == 401

    def test_unknown_account(self):
        with pytest.raises(AuthError) as exc_info:
            self.gate.authenticate(self.bearer(account_id="acc_missing"))
        assert exc_info.value.status_code == 401

    def test_blocked_account_forbidden(self):
        self.accounts.block(self.account.id)

        with pytest.raises(AuthError) as exc_info:
            self.gate.authenticate(self.bearer())
        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Account is blocked"

    def test_pending_account_forbidden(self):
        pending = self.accounts.register(
            name="New", email="new@example.com", phone="01700000002",
            role=Role.CUSTOMER, pin="1111"
        )
        with pytest.raises(AuthError) as exc_info:
            self.gate.authenticate(self.bearer(account_id=pending.id))
        assert exc_info.value.status_code == 403

    def test_login_by_email_and_phone(self):
        token, account = self.gate.login("rahim@example.com", "12345")
        assert account.id == self.account.id
        assert self.tokens.verify(token).account_id == self.account.id

        _, account = self.gate.login("01700000001", 12345)
        assert account.id == self.account.id

    @pytest.mark.parametrize("identifier,pin", [
        ("rahim@example.com", "00000"),
        ("ghost@example.com", "12345"),
        ("", "12345"),
    ])
    def test_login_failures(self, identifier, pin):
        with pytest.raises(AuthError, match="Invalid credentials"):
            self.gate.login(identifier, pin)
