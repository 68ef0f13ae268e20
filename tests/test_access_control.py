"""Tests for the per-request access control pipeline."""

import pytest

from conftest import STRONG_PASSWORD
from harmonia.service.access import (
    Credentials,
    Public,
    RequireAuth,
    RequireRole,
    TokenChannel,
)
from harmonia.service.errors import ForbiddenError, UnauthenticatedError
from harmonia.service.tokens import TokenKind, TokenPayload
from harmonia.storage.models import Role


@pytest.fixture
def pipeline(runtime):
    return runtime.access


@pytest.fixture
def alice(accounts, verifier):
    return accounts.create_account(
        "alice@example.com",
        verifier.hash(STRONG_PASSWORD),
        first_name="Alice",
        last_name="Liddell",
        roles=[Role.USER],
        is_verified=True,
    )


@pytest.fixture
def pair(runtime, alice):
    return runtime.tokens.issue_pair(TokenPayload.for_account(alice))


class TestRequireAuth:
    async def test_valid_access_token_yields_principal(self, pipeline, pair, alice):
        principal = await pipeline.authenticate(RequireAuth(), Credentials(access_token=pair.access_token))
        assert principal.account_id == alice.id
        assert principal.roles == [Role.USER]
        assert principal.token_kind == TokenKind.ACCESS

    async def test_missing_token_is_unauthenticated(self, pipeline):
        with pytest.raises(UnauthenticatedError):
            await pipeline.authenticate(RequireAuth(), Credentials())

    async def test_garbage_token_is_unauthenticated(self, pipeline):
        with pytest.raises(UnauthenticatedError):
            await pipeline.authenticate(RequireAuth(), Credentials(access_token="garbage"))

    async def test_refresh_token_on_access_channel_rejected(self, pipeline, pair):
        with pytest.raises(UnauthenticatedError):
            await pipeline.authenticate(RequireAuth(), Credentials(access_token=pair.refresh_token))

    async def test_deleted_account_is_unauthenticated(self, pipeline, pair, accounts, alice):
        accounts.accounts.pop(alice.id)
        with pytest.raises(UnauthenticatedError):
            await pipeline.authenticate(RequireAuth(), Credentials(access_token=pair.access_token))

    async def test_unexpected_failure_becomes_unauthenticated(self, pipeline, pair, monkeypatch):
        def _broken(_account_id):
            raise RuntimeError("store exploded")

        monkeypatch.setattr(pipeline.accounts, "get_account", _broken)
        with pytest.raises(UnauthenticatedError):
            await pipeline.authenticate(RequireAuth(), Credentials(access_token=pair.access_token))

    async def test_refresh_channel_reads_refresh_slot(self, pipeline, pair, alice):
        principal = await pipeline.authenticate(
            RequireAuth(),
            Credentials(access_token="ignored", refresh_token=pair.refresh_token),
            channel=TokenChannel.REFRESH,
        )
        assert principal.account_id == alice.id
        assert principal.token_kind == TokenKind.REFRESH


class TestRequireRole:
    async def test_matching_role_allowed(self, pipeline, pair):
        principal = await pipeline.authenticate(
            RequireRole.of(Role.USER), Credentials(access_token=pair.access_token)
        )
        assert principal is not None

    async def test_any_of_required_roles_suffices(self, pipeline, pair):
        principal = await pipeline.authenticate(
            RequireRole.of(Role.ADMIN, Role.USER), Credentials(access_token=pair.access_token)
        )
        assert principal is not None

    async def test_missing_role_is_forbidden(self, pipeline, pair):
        with pytest.raises(ForbiddenError) as exc:
            await pipeline.authenticate(RequireRole.of(Role.ADMIN), Credentials(access_token=pair.access_token))
        assert exc.value.status_code == 403

    async def test_roles_read_from_store_not_token(self, pipeline, pair, accounts, alice):
        accounts.update_account(alice.id, roles=[Role.ADMIN])
        principal = await pipeline.authenticate(
            RequireRole.of(Role.ADMIN), Credentials(access_token=pair.access_token)
        )
        assert principal.roles == [Role.ADMIN]

    async def test_unauthenticated_precedes_forbidden(self, pipeline):
        with pytest.raises(UnauthenticatedError):
            await pipeline.authenticate(RequireRole.of(Role.ADMIN), Credentials())

    def test_empty_role_requirement_rejected(self):
        with pytest.raises(ValueError):
            RequireRole.of()


class TestPublic:
    async def test_anonymous_request_allowed(self, pipeline):
        assert await pipeline.authenticate(Public(), Credentials()) is None

    async def test_bad_token_is_ignored(self, pipeline):
        assert await pipeline.authenticate(Public(), Credentials(access_token="garbage")) is None

    async def test_valid_token_still_attaches_principal(self, pipeline, pair, alice):
        principal = await pipeline.authenticate(Public(), Credentials(access_token=pair.access_token))
        assert principal.account_id == alice.id


class TestLogoutChannel:
    async def test_garbage_yields_no_principal(self, pipeline):
        principal = await pipeline.authenticate(
            Public(), Credentials(access_token="garbage", refresh_token="junk"), channel=TokenChannel.LOGOUT
        )
        assert principal is None

    async def test_access_token_preferred(self, pipeline, pair, alice):
        principal = await pipeline.authenticate(
            RequireAuth(), Credentials(access_token=pair.access_token), channel=TokenChannel.LOGOUT
        )
        assert principal.account_id == alice.id
        assert principal.token_kind == TokenKind.ACCESS

    async def test_falls_back_to_refresh_token(self, pipeline, pair, alice):
        principal = await pipeline.authenticate(
            Public(),
            Credentials(access_token="expired", refresh_token=pair.refresh_token),
            channel=TokenChannel.LOGOUT,
        )
        assert principal.account_id == alice.id
        assert principal.token_kind == TokenKind.REFRESH
