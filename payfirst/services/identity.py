"""Identity provider collaborators.

Account creation happens outside the reconciler's database transaction. The
local provider commits in its own session; the remote provider is a
GoTrue-style admin API. Either way the reconciler has to delete the account
itself when its own transaction fails.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from payfirst.errors import AccountExists, IdentityProviderError, InvalidCredentials
from payfirst.models import IdentityAccount
from payfirst.settings import IdentityProviderKind, Settings
from .auth import get_password_hash, verify_password

logger = logging.getLogger(__name__)


class IdentityAccountExists(AccountExists):
    pass


@dataclass
class IdentityUser:
    id: str
    email: str
    display_name: str = ""


class IdentityProvider(ABC):
    @abstractmethod
    async def sign_up(self, email: str, password: str, display_name: str = "") -> IdentityUser:
        ...

    @abstractmethod
    async def authenticate(self, email: str, password: str) -> IdentityUser:
        ...

    @abstractmethod
    async def delete_account(self, account_id: str) -> None:
        """Remove the account. Deleting an unknown id is not an error."""


class LocalIdentityProvider(IdentityProvider):
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def sign_up(self, email: str, password: str, display_name: str = "") -> IdentityUser:
        account = IdentityAccount(
            email=email.lower(),
            hashed_password=get_password_hash(password),
            display_name=display_name,
        )
        async with self.session_factory() as session:
            session.add(account)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise IdentityAccountExists()
            await session.refresh(account)
        return IdentityUser(id=account.id, email=account.email, display_name=account.display_name)

    async def authenticate(self, email: str, password: str) -> IdentityUser:
        async with self.session_factory() as session:
            res = await session.execute(select(IdentityAccount).where(IdentityAccount.email == email.lower()))
            account = res.scalar_one_or_none()
        if not account or not account.is_active or not verify_password(password, account.hashed_password):
            raise InvalidCredentials()
        return IdentityUser(id=account.id, email=account.email, display_name=account.display_name)

    async def delete_account(self, account_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(IdentityAccount).where(IdentityAccount.id == account_id))
            await session.commit()


class RemoteIdentityProvider(IdentityProvider):
    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = settings.identity_api_base.rstrip("/")
        self.service_key = settings.identity_service_key
        self.timeout = settings.gateway_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }
        return httpx.AsyncClient(
            base_url=self.base_url, headers=headers, timeout=self.timeout, transport=self.transport
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        async with self._client() as client:
            try:
                return await client.request(method, path, **kwargs)
            except httpx.HTTPError as exc:
                logger.error(f"Identity provider {method} {path} failed: {exc!r}")
                raise IdentityProviderError()

    @staticmethod
    def _to_user(payload: dict) -> IdentityUser:
        user = payload.get("user") or payload
        if not user.get("id"):
            raise IdentityProviderError("Identity provider returned no user")
        metadata = user.get("user_metadata") or {}
        return IdentityUser(id=user["id"], email=user.get("email", ""), display_name=metadata.get("name", ""))

    async def sign_up(self, email: str, password: str, display_name: str = "") -> IdentityUser:
        resp = await self._request(
            "POST",
            "/auth/v1/admin/users",
            json={
                "email": email,
                "password": password,
                "email_confirm": True,
                "user_metadata": {"name": display_name},
            },
        )
        if resp.status_code in (409, 422):
            body = resp.text.lower()
            if "already" in body or "exists" in body:
                raise IdentityAccountExists()
        if resp.status_code >= 400:
            logger.error(f"Identity provider signup answered {resp.status_code}: {resp.text[:300]}")
            raise IdentityProviderError()
        return self._to_user(resp.json())

    async def authenticate(self, email: str, password: str) -> IdentityUser:
        resp = await self._request(
            "POST", "/auth/v1/token", params={"grant_type": "password"}, json={"email": email, "password": password}
        )
        if resp.status_code in (400, 401):
            raise InvalidCredentials()
        if resp.status_code >= 400:
            raise IdentityProviderError()
        return self._to_user(resp.json())

    async def delete_account(self, account_id: str) -> None:
        resp = await self._request("DELETE", f"/auth/v1/admin/users/{account_id}")
        if resp.status_code == 404:
            return
        if resp.status_code >= 400:
            raise IdentityProviderError(f"Failed to delete identity account {account_id}")


def build_identity_provider(settings: Settings, session_factory: async_sessionmaker) -> IdentityProvider:
    if settings.identity_provider == IdentityProviderKind.REMOTE:
        return RemoteIdentityProvider(settings)
    return LocalIdentityProvider(session_factory)
