from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

from harmonia.config import Settings
from harmonia.logging import get_logger
from harmonia.service.errors import (
    TokenExpiredError,
    TokenInvalidSignatureError,
    TokenMalformedError,
)
from harmonia.storage.models import Account, Role, normalize_roles

logger = get_logger(__name__)

_ALGORITHM = "HS256"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPayload:
    """Claims shared by access and refresh tokens."""

    sub: str
    email: str
    roles: List[Role] = field(default_factory=lambda: [Role.USER])

    @classmethod
    def for_account(cls, account: Account) -> "TokenPayload":
        return cls(sub=account.id, email=account.email, roles=list(account.roles))


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: int
    refresh_expires_at: int
    token_type: str = "bearer"


class TokenCodec:
    """Signs and verifies HS256 JWTs, one secret and lifetime per token kind.

    Access and refresh tokens carry the same claims; only the signing secret,
    the expiry and the ``token_type`` claim differ, so a token of one kind never
    verifies as the other.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        issuer: str = "harmonia",
        audience: str = "harmonia-clients",
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {
            TokenKind.ACCESS: access_secret.encode(),
            TokenKind.REFRESH: refresh_secret.encode(),
        }
        self._ttls = {
            TokenKind.ACCESS: int(access_ttl_seconds),
            TokenKind.REFRESH: int(refresh_ttl_seconds),
        }
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )

    def ttl_seconds(self, kind: TokenKind) -> int:
        return self._ttls[TokenKind(kind)]

    def issue_pair(self, payload: TokenPayload) -> TokenPair:
        now = int(self._clock())
        access_exp = now + self._ttls[TokenKind.ACCESS]
        refresh_exp = now + self._ttls[TokenKind.REFRESH]
        return TokenPair(
            access_token=self._encode(self._claims(payload, TokenKind.ACCESS, now, access_exp), TokenKind.ACCESS),
            refresh_token=self._encode(self._claims(payload, TokenKind.REFRESH, now, refresh_exp), TokenKind.REFRESH),
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify(self, token: str, kind: TokenKind) -> TokenPayload:
        """Return the payload of ``token`` if it is a valid, unexpired ``kind`` token.

        Raises:
            TokenMalformedError: not a decodable HS256 JWT or missing claims
            TokenInvalidSignatureError: signed with another secret, or issued
                for another kind, issuer or audience
            TokenExpiredError: signature is valid but ``exp`` has passed
        """
        kind = TokenKind(kind)
        if not token or not isinstance(token, str):
            raise TokenMalformedError("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformedError("token is not a JWT")

        # Pin the algorithm to prevent alg-confusion attacks
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenMalformedError("token header undecodable")
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise TokenMalformedError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        try:
            sig_ok = hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("ascii"))
        except UnicodeEncodeError:
            raise TokenMalformedError("token signature undecodable")
        if not sig_ok:
            raise TokenInvalidSignatureError("token signature invalid")

        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenMalformedError("token payload undecodable")
        if not isinstance(claims, dict):
            raise TokenMalformedError("token payload undecodable")

        if claims.get("token_type") != kind.value:
            raise TokenInvalidSignatureError("token kind mismatch")
        if claims.get("iss") != self.issuer or claims.get("aud") != self.audience:
            raise TokenInvalidSignatureError("token issuer or audience mismatch")
        try:
            exp_ts = float(claims["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenMalformedError("token expiry missing")
        if exp_ts <= self._clock() - self.leeway_seconds:
            raise TokenExpiredError("token expired")
        return self._payload_from_claims(claims)

    def _claims(self, payload: TokenPayload, kind: TokenKind, now: int, exp: int) -> Dict[str, Any]:
        return {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": payload.sub,
            "email": payload.email,
            "roles": [Role(r).value for r in payload.roles],
            "token_type": kind.value,
            # jti keeps two pairs issued in the same second distinct
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": exp,
        }

    @staticmethod
    def _payload_from_claims(claims: Dict[str, Any]) -> TokenPayload:
        sub = claims.get("sub")
        email = claims.get("email")
        if not isinstance(sub, str) or not sub or not isinstance(email, str):
            raise TokenMalformedError("token subject missing")
        try:
            roles = normalize_roles(claims.get("roles") or [])
        except ValueError:
            raise TokenMalformedError("token roles invalid")
        return TokenPayload(sub=sub, email=email, roles=roles)

    def _encode(self, claims: Dict[str, Any], kind: TokenKind) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)
