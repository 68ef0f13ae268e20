from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Protocol

from harmonia.config import Settings
from harmonia.logging import get_logger, hash_email
from harmonia.service.errors import (
    AccountNotVerifiedError,
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    InvalidOrExpiredOtpError,
    NotFoundError,
    RefreshTokenRevokedError,
    UnauthenticatedError,
    ValidationError,
)
from harmonia.service.otp import OtpService
from harmonia.service.passwords import CredentialVerifier
from harmonia.service.sessions import SessionStore
from harmonia.service.tokens import TokenCodec, TokenKind, TokenPair, TokenPayload
from harmonia.storage.errors import ConstraintViolation
from harmonia.storage.models import Account, Role, normalize_email, normalize_roles

logger = get_logger(__name__)

ACCOUNT_ID_RE = re.compile(r"^[0-9a-f]{32}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_MIN_LENGTH = 8
NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 20


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        roles: Optional[Iterable[Role]] = None,
        is_verified: bool = False,
    ) -> Account: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_password_hash(self, account_id: str) -> Optional[str]: ...

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]: ...

    def list_accounts(self, limit: int = 10, offset: int = 0) -> List[Account]: ...

    def count_accounts(self) -> int: ...


class Mailer(Protocol):
    def send(self, to: str, subject: str, template: str, context: Mapping[str, Any]) -> bool: ...


@dataclass
class AuthResult:
    account: Account
    tokens: TokenPair


@dataclass
class AccountUpdateResult:
    updated: List[Account] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


def validate_password_strength(password: str) -> None:
    """At least 8 characters with a lowercase, an uppercase, a digit and a symbol."""
    if (
        not password
        or len(password) < PASSWORD_MIN_LENGTH
        or not re.search(r"[a-z]", password)
        or not re.search(r"[A-Z]", password)
        or not re.search(r"\d", password)
        or not re.search(r"[^A-Za-z0-9]", password)
    ):
        raise ValidationError(
            "password is not strong enough",
            detail={
                "field": "password",
                "rule": f"min {PASSWORD_MIN_LENGTH} chars with lowercase, uppercase, digit and symbol",
            },
        )


def validate_account_id(account_id: str) -> str:
    if not isinstance(account_id, str) or not ACCOUNT_ID_RE.match(account_id):
        raise ValidationError("invalid account id format", detail={"account_id": account_id})
    return account_id


def _validate_name(value: str, field_name: str) -> str:
    cleaned = (value or "").strip()
    if not NAME_MIN_LENGTH <= len(cleaned) <= NAME_MAX_LENGTH:
        raise ValidationError(
            f"{field_name} must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} characters",
            detail={"field": field_name},
        )
    return cleaned


class AuthenticationService:
    """Account lifecycle: registration, email verification, login and sessions.

    Accounts move ``registered (unverified) -> verified``; only verified
    accounts may log in or refresh. Refresh tokens are single-use: every
    refresh revokes the presented token and persists its replacement.
    """

    def __init__(
        self,
        *,
        accounts: AccountStore,
        sessions: SessionStore,
        tokens: TokenCodec,
        otp: OtpService,
        mailer: Mailer,
        verifier: CredentialVerifier,
        settings: Optional[Settings] = None,
    ) -> None:
        self.accounts = accounts
        self.sessions = sessions
        self.tokens = tokens
        self.otp = otp
        self.mailer = mailer
        self.verifier = verifier
        self.settings = settings
        self._dummy_hash: Optional[str] = None

    # -- registration and verification ------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: str,
        last_name: str,
    ) -> str:
        if self.settings is not None and not self.settings.allow_signup:
            raise ValidationError("signup is disabled")
        normalized = normalize_email(email or "")
        if not EMAIL_RE.match(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        first = _validate_name(first_name, "first_name")
        last = _validate_name(last_name, "last_name")
        validate_password_strength(password)

        if self.accounts.get_account_by_email(normalized):
            raise EmailAlreadyExistsError("email already registered", detail={"field": "email"})
        password_hash = self.verifier.hash(password)
        try:
            account = self.accounts.create_account(
                normalized,
                password_hash,
                first_name=first,
                last_name=last,
                roles=[Role.USER],
            )
        except ConstraintViolation as exc:
            # lost a concurrent registration race for the same address
            raise EmailAlreadyExistsError("email already registered", detail={"field": "email"}) from exc

        logger.info("account_registered", account_id=account.id, email_hash=hash_email(normalized))
        # Mail failure leaves the account unverified; resend_otp is the recovery path
        await self._send_verification_code(account)
        return account.id

    async def verify_otp(self, email: str, code: str) -> Account:
        normalized = normalize_email(email or "")
        if not await self.otp.verify(normalized, code):
            logger.info("otp_rejected", email_hash=hash_email(normalized))
            raise InvalidOrExpiredOtpError("invalid or expired OTP code")
        account = self.accounts.get_account_by_email(normalized)
        if not account:
            # code was issued for an address that no longer has an account
            raise InvalidOrExpiredOtpError("invalid or expired OTP code")
        updated = self.accounts.update_account(account.id, is_verified=True) or account
        logger.info("account_verified", account_id=account.id)
        return updated

    async def resend_otp(self, email: str) -> None:
        """Issue and mail a fresh code, invalidating any pending one.

        Unknown addresses are accepted silently so the endpoint cannot be used
        to probe for accounts. Callers are expected to rate-limit.
        """
        normalized = normalize_email(email or "")
        account = self.accounts.get_account_by_email(normalized)
        if not account:
            logger.info("otp_resend_unknown_email", email_hash=hash_email(normalized))
            return
        await self._send_verification_code(account)

    async def _send_verification_code(self, account: Account) -> bool:
        code = await self.otp.generate(account.email)
        context = {
            "name": account.display_name,
            "code": code,
            "expires_minutes": max(1, self.otp.ttl_seconds // 60),
        }
        return await self._mail(account, "Activate your account", "register", context)

    async def _mail(
        self, account: Account, subject: str, template: str, context: Mapping[str, Any]
    ) -> bool:
        try:
            sent = await asyncio.to_thread(self.mailer.send, account.email, subject, template, context)
        except Exception as exc:
            logger.warning(
                "email_dispatch_failed",
                account_id=account.id,
                template=template,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not sent:
            logger.warning("email_dispatch_failed", account_id=account.id, template=template)
        return bool(sent)

    # -- login and sessions -----------------------------------------------

    async def login(self, email: str, password: str) -> AuthResult:
        account = self.accounts.get_account_by_email(normalize_email(email or ""))
        stored_hash = self.accounts.get_password_hash(account.id) if account else None
        if not account or not stored_hash:
            # burn comparable time so a missing account is not observable
            self.verifier.verify(password or "", self._timing_hash())
            logger.info("login_failed", reason="invalid_credentials", email_hash=hash_email(email or ""))
            raise InvalidCredentialsError("invalid email or password")
        if not self.verifier.verify(password or "", stored_hash):
            logger.info("login_failed", reason="invalid_credentials", account_id=account.id)
            raise InvalidCredentialsError("invalid email or password")
        if not account.is_verified:
            logger.info("login_failed", reason="not_verified", account_id=account.id)
            raise AccountNotVerifiedError("account email is not verified")

        if self.verifier.needs_rehash(stored_hash):
            self.accounts.update_account(account.id, password_hash=self.verifier.hash(password))
            logger.info("password_rehashed", account_id=account.id)

        tokens = await self._open_session(account)
        logger.info("login_succeeded", account_id=account.id)
        return AuthResult(account=account, tokens=tokens)

    async def refresh(self, refresh_token: str) -> AuthResult:
        payload = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        if await self.sessions.get(payload.sub, refresh_token) is None:
            logger.warning("refresh_token_revoked", account_id=payload.sub)
            raise RefreshTokenRevokedError("refresh token has been revoked")
        # Only the caller whose delete removed the record may rotate it
        if not await self.sessions.revoke(payload.sub, refresh_token):
            logger.warning("refresh_token_race_lost", account_id=payload.sub)
            raise RefreshTokenRevokedError("refresh token has been revoked")

        account = self.accounts.get_account(payload.sub)
        if not account:
            raise UnauthenticatedError("account no longer exists")
        if not account.is_verified:
            raise AccountNotVerifiedError("account email is not verified")
        tokens = await self._open_session(account)
        logger.info("refresh_rotated", account_id=account.id)
        return AuthResult(account=account, tokens=tokens)

    async def logout(self, account_id: str, refresh_token: Optional[str]) -> bool:
        """Revoke the session behind ``refresh_token``; absent sessions are not an error."""
        if not account_id or not refresh_token:
            return False
        removed = await self.sessions.revoke(account_id, refresh_token)
        logger.info("logout", account_id=account_id, session_removed=removed)
        return removed

    async def _open_session(self, account: Account) -> TokenPair:
        tokens = self.tokens.issue_pair(TokenPayload.for_account(account))
        await self.sessions.put(
            account.id,
            tokens.refresh_token,
            self.tokens.ttl_seconds(TokenKind.REFRESH),
        )
        return tokens

    def _timing_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self.verifier.hash(secrets.token_urlsafe(16))
        return self._dummy_hash

    # -- account self-service ---------------------------------------------

    def profile(self, account_id: str) -> Account:
        account = self.accounts.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    async def change_password(self, account_id: str, old_password: str, new_password: str) -> Account:
        account = self.profile(account_id)
        stored_hash = self.accounts.get_password_hash(account_id)
        if not stored_hash or not self.verifier.verify(old_password or "", stored_hash):
            logger.info("password_change_rejected", account_id=account_id)
            raise InvalidCredentialsError("current password is incorrect")
        if old_password == new_password:
            raise ValidationError("new password must differ from the current one", detail={"field": "new_password"})
        validate_password_strength(new_password)
        updated = self.accounts.update_account(account_id, password_hash=self.verifier.hash(new_password)) or account
        logger.info("password_changed", account_id=account_id)
        await self._mail(updated, "Your password was changed", "password_changed", {"name": updated.display_name})
        return updated

    # -- administration ---------------------------------------------------

    def list_accounts(self, *, limit: int = 10, offset: int = 0) -> tuple[List[Account], int]:
        if limit < 1 or limit > 100 or offset < 0:
            raise ValidationError("limit must be 1-100 and offset non-negative")
        return self.accounts.list_accounts(limit=limit, offset=offset), self.accounts.count_accounts()

    def get_account(self, account_id: str) -> Account:
        return self.profile(validate_account_id(account_id))

    def update_roles(self, account_ids: Iterable[str], roles: Iterable[Any]) -> AccountUpdateResult:
        try:
            new_roles = normalize_roles(roles)
        except ValueError as exc:
            raise ValidationError("roles must be a non-empty subset of USER, ARTIST, ADMIN") from exc
        result = AccountUpdateResult()
        for account_id in self._unique_ids(account_ids):
            updated = self.accounts.update_account(account_id, roles=new_roles)
            if updated:
                result.updated.append(updated)
            else:
                result.missing.append(account_id)
        logger.info(
            "account_roles_updated",
            updated=len(result.updated),
            missing=len(result.missing),
            roles=[r.value for r in new_roles],
        )
        return result

    def set_verified(self, account_ids: Iterable[str], verified: bool) -> AccountUpdateResult:
        """Activate or deactivate accounts."""
        result = AccountUpdateResult()
        for account_id in self._unique_ids(account_ids):
            updated = self.accounts.update_account(account_id, is_verified=bool(verified))
            if updated:
                result.updated.append(updated)
            else:
                result.missing.append(account_id)
        logger.info("account_activation_changed", verified=verified, updated=len(result.updated))
        return result

    def ensure_admin(
        self,
        email: str,
        password: str,
        *,
        first_name: str = "Harmonia",
        last_name: str = "Admin",
    ) -> tuple[Account, str]:
        """Create a verified account holding every role, or promote an existing one.

        Returns the account and one of ``created``, ``promoted`` or ``already_admin``.
        """
        normalized = normalize_email(email or "")
        all_roles = [Role.ADMIN, Role.USER, Role.ARTIST]
        existing = self.accounts.get_account_by_email(normalized)
        if existing:
            if Role.ADMIN in existing.roles:
                return existing, "already_admin"
            roles = list(existing.roles) + [Role.ADMIN]
            promoted = self.accounts.update_account(existing.id, roles=roles, is_verified=True) or existing
            logger.info("admin_promoted", account_id=existing.id)
            return promoted, "promoted"
        validate_password_strength(password)
        account = self.accounts.create_account(
            normalized,
            self.verifier.hash(password),
            first_name=first_name,
            last_name=last_name,
            roles=all_roles,
            is_verified=True,
        )
        logger.info("admin_created", account_id=account.id)
        return account, "created"

    @staticmethod
    def _unique_ids(account_ids: Iterable[str]) -> List[str]:
        ids: List[str] = []
        for account_id in account_ids or []:
            validate_account_id(account_id)
            if account_id not in ids:
                ids.append(account_id)
        if not ids:
            raise ValidationError("at least one account id is required")
        return ids
