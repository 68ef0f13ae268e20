from __future__ import annotations

from enum import Enum
from typing import Optional, Protocol


class ServiceName(str, Enum):
    AUTH = "auth"


class ItemName(str, Enum):
    REFRESH_TOKEN = "refresh_token"
    VERIFICATION_CODE = "verification_code"


def make_key(service: ServiceName, item: ItemName, identifier: str) -> str:
    """Build a namespaced key of the form ``<service>:<item>:<identifier>``.

    Every component that touches the key-value store derives its keys here, so
    the key space stays partitioned per service and item.
    """
    if not identifier:
        raise ValueError("key identifier must not be empty")
    return f"{ServiceName(service).value}:{ItemName(item).value}:{identifier}"


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
