from __future__ import annotations

import hmac
import json
import secrets
import time
from typing import Callable, Optional

from harmonia.logging import get_logger, hash_email
from harmonia.storage.keys import ItemName, KeyValueStore, ServiceName, make_key
from harmonia.storage.models import normalize_email

logger = get_logger(__name__)


class OtpService:
    """Numeric one-time codes proving control of an email address.

    Only the most recently generated code for an identifier is valid, and a
    code is accepted at most once: the record is deleted on success and only
    the caller whose delete removed it gets ``True``.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_seconds: int = 120,
        digits: int = 6,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if digits < 4:
            raise ValueError("otp codes need at least 4 digits")
        self.kv = kv
        self.ttl_seconds = ttl_seconds
        self.digits = digits
        self._clock = clock

    @staticmethod
    def _key(identifier: str) -> str:
        return make_key(ServiceName.AUTH, ItemName.VERIFICATION_CODE, normalize_email(identifier))

    async def generate(self, identifier: str) -> str:
        code = str(secrets.randbelow(10**self.digits)).zfill(self.digits)
        record = {"code": code, "expires_at": self._clock() + self.ttl_seconds}
        await self.kv.set(self._key(identifier), json.dumps(record), self.ttl_seconds)
        logger.info("otp_generated", email_hash=hash_email(identifier), ttl_seconds=self.ttl_seconds)
        return code

    async def verify(self, identifier: str, supplied_code: Optional[str]) -> bool:
        if not supplied_code:
            return False
        key = self._key(identifier)
        raw = await self.kv.get(key)
        if raw is None:
            return False
        try:
            record = json.loads(raw)
            code = str(record["code"])
            expires_at = float(record["expires_at"])
        except (ValueError, TypeError, KeyError):
            logger.warning("otp_record_corrupt", email_hash=hash_email(identifier))
            return False
        # Stale records are left to the store TTL; a delete here could erase a
        # code issued by a concurrent resend
        if self._clock() > expires_at:
            return False
        if not hmac.compare_digest(code.encode(), str(supplied_code).strip().encode()):
            return False
        # Two concurrent verifies may both reach here; only one delete wins
        consumed = await self.kv.delete(key)
        if not consumed:
            logger.info("otp_already_consumed", email_hash=hash_email(identifier))
        return consumed
