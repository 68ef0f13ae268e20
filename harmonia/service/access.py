from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Tuple, Union

from harmonia.logging import get_logger
from harmonia.service.auth import AccountStore
from harmonia.service.errors import ForbiddenError, TokenError, UnauthenticatedError
from harmonia.service.tokens import TokenCodec, TokenKind
from harmonia.storage.models import Account, Role, normalize_roles

logger = get_logger(__name__)


@dataclass(frozen=True)
class Public:
    """No authentication required; a valid token still yields a principal."""


@dataclass(frozen=True)
class RequireAuth:
    """Any authenticated principal."""


@dataclass(frozen=True)
class RequireRole:
    """Principal must hold at least one of ``roles``."""

    roles: FrozenSet[Role] = field(default_factory=frozenset)

    @classmethod
    def of(cls, *roles: Union[Role, str]) -> "RequireRole":
        return cls(roles=frozenset(normalize_roles(roles)))


AuthMode = Union[Public, RequireAuth, RequireRole]


class TokenChannel(str, Enum):
    """Which transport slot a guard reads its credential from.

    ``LOGOUT`` reads the access token, falls back to the refresh token, and
    never rejects: a client must always be able to clear its own state.
    """

    ACCESS = "access"
    REFRESH = "refresh"
    LOGOUT = "logout"


@dataclass(frozen=True)
class Credentials:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    def for_channel(self, channel: TokenChannel) -> Tuple[Optional[str], TokenKind]:
        if channel == TokenChannel.REFRESH:
            return self.refresh_token, TokenKind.REFRESH
        return self.access_token, TokenKind.ACCESS


@dataclass(frozen=True)
class Principal:
    account_id: str
    email: str
    roles: List[Role]
    account: Account
    token_kind: TokenKind = TokenKind.ACCESS

    def has_any_role(self, roles: Iterable[Role]) -> bool:
        return any(role in self.roles for role in roles)


class AccessControlPipeline:
    """Per-request decision chain: extract, verify, load principal, check roles.

    Rejections are ``UnauthenticatedError`` (401) for missing or bad
    credentials and ``ForbiddenError`` (403) for a role mismatch. No other
    exception escapes ``authenticate``.
    """

    def __init__(self, *, tokens: TokenCodec, accounts: AccountStore) -> None:
        self.tokens = tokens
        self.accounts = accounts

    async def authenticate(
        self,
        mode: AuthMode,
        credentials: Credentials,
        *,
        channel: TokenChannel = TokenChannel.ACCESS,
    ) -> Optional[Principal]:
        if channel == TokenChannel.LOGOUT:
            return self._lenient(credentials)
        if isinstance(mode, Public):
            return self._try_principal(credentials, channel)

        token, kind = credentials.for_channel(channel)
        if not token:
            raise UnauthenticatedError("authentication required")
        try:
            principal = self._load_principal(token, kind)
        except UnauthenticatedError:
            raise
        except TokenError as exc:
            logger.info("token_rejected", kind=kind.value, reason=type(exc).__name__)
            raise UnauthenticatedError(exc.message) from exc
        except Exception as exc:
            logger.exception("authentication_pipeline_error", error_type=type(exc).__name__)
            raise UnauthenticatedError("authentication failed") from exc

        if isinstance(mode, RequireRole) and mode.roles and not principal.has_any_role(mode.roles):
            logger.info(
                "access_forbidden",
                account_id=principal.account_id,
                required=sorted(r.value for r in mode.roles),
            )
            raise ForbiddenError(
                "insufficient role",
                detail={"required_roles": sorted(r.value for r in mode.roles)},
            )
        return principal

    def _load_principal(self, token: str, kind: TokenKind) -> Principal:
        payload = self.tokens.verify(token, kind)
        account = self.accounts.get_account(payload.sub)
        if not account:
            logger.info("principal_missing", account_id=payload.sub)
            raise UnauthenticatedError("account no longer exists")
        # roles come from the store so admin changes apply before token expiry
        return Principal(
            account_id=account.id,
            email=account.email,
            roles=list(account.roles),
            account=account,
            token_kind=kind,
        )

    def _try_principal(self, credentials: Credentials, channel: TokenChannel) -> Optional[Principal]:
        token, kind = credentials.for_channel(channel)
        if not token:
            return None
        try:
            return self._load_principal(token, kind)
        except Exception as exc:
            logger.debug("optional_principal_ignored", reason=type(exc).__name__)
            return None

    def _lenient(self, credentials: Credentials) -> Optional[Principal]:
        return self._try_principal(credentials, TokenChannel.ACCESS) or self._try_principal(
            credentials, TokenChannel.REFRESH
        )
