from __future__ import annotations

from datetime import datetime
import json
import threading
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.core import observability
from src.core.config import get_settings
from src.integrations.graph.client import get_graph_client
from src.storage.db import Base, load_models
from src.storage.models import Brand, Publication, SocialAccount, Workspace
from src.storage.redis_client import get_client as get_redis_client
from src.storage.security import (
    PLATFORM_FACEBOOK_PAGE,
    PLATFORM_INSTAGRAM_BUSINESS,
    CredentialBlob,
    encrypt_credentials,
    get_token_key,
)


class FakeRedis:
    """In-memory subset of redis-py used by the job queue (decode_responses=True)."""

    def __init__(self) -> None:
        self._store: Dict[str, str] = {}
        self._lists: Dict[str, List[str]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def incr(self, key: str) -> int:
        value = int(self._store.get(key, "0")) + 1
        self._store[key] = str(value)
        return value

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        del ex
        if nx and key in self._store:
            return False
        self._store[key] = str(value)
        return True

    def get(self, key: str):
        return self._store.get(key)

    def delete(self, key: str):
        return 1 if self._store.pop(key, None) is not None else 0

    def rpush(self, key: str, *values: str) -> int:
        items = self._lists.setdefault(key, [])
        items.extend(str(value) for value in values)
        return len(items)

    def lmove(self, source: str, destination: str, src: str = "LEFT", dest: str = "RIGHT"):
        with self._lock:
            items = self._lists.get(source) or []
            if not items:
                return None
            value = items.pop(0) if src == "LEFT" else items.pop()
            target = self._lists.setdefault(destination, [])
            if dest == "LEFT":
                target.insert(0, value)
            else:
                target.append(value)
            return value

    def lrem(self, key: str, count: int, value: str) -> int:
        items = self._lists.get(key) or []
        removed = 0
        while value in items and (count == 0 or removed < abs(count)):
            items.remove(value)
            removed += 1
        return removed

    def llen(self, key: str) -> int:
        return len(self._lists.get(key) or [])

    def lrange(self, key: str, start: int, end: int) -> List[str]:
        items = self._lists.get(key) or []
        return list(items[start:] if end == -1 else items[start : end + 1])

    def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        zset = self._zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update({str(member): float(score) for member, score in mapping.items()})
        return added

    def zrangebyscore(self, key: str, minimum: Any, maximum: Any) -> List[str]:
        low = float("-inf") if minimum == "-inf" else float(minimum)
        high = float("inf") if maximum == "+inf" else float(maximum)
        zset = self._zsets.get(key) or {}
        return [member for member, score in sorted(zset.items(), key=lambda item: item[1]) if low <= score <= high]

    def zrem(self, key: str, *members: str) -> int:
        zset = self._zsets.get(key) or {}
        return sum(1 for member in members if zset.pop(member, None) is not None)

    def zcard(self, key: str) -> int:
        return len(self._zsets.get(key) or {})

    def zscore(self, key: str, member: str) -> Optional[float]:
        return (self._zsets.get(key) or {}).get(member)


class Seeder:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._factory = session_factory

    def workspace_brand(self, *, name: str = "Acme") -> tuple[str, str]:
        session = self._factory()
        try:
            workspace = Workspace(name=f"{name} workspace")
            session.add(workspace)
            session.flush()
            brand = Brand(workspace_id=workspace.id, name=name)
            session.add(brand)
            session.commit()
            return workspace.id, brand.id
        finally:
            session.close()

    def social_account(
        self,
        workspace_id: str,
        brand_id: str,
        *,
        platform: str = "facebook",
        credential_platform: Optional[str] = None,
        credentials: Optional[Dict[str, Any]] = None,
        platform_data: Optional[Dict[str, Any]] = None,
        token_data: Optional[Dict[str, Any]] = None,
        token_expires_at: Optional[datetime] = None,
        platform_account_id: str = "page-1",
    ) -> str:
        if credential_platform is None:
            credential_platform = PLATFORM_FACEBOOK_PAGE if platform == "facebook" else PLATFORM_INSTAGRAM_BUSINESS
        session = self._factory()
        try:
            account = SocialAccount(
                workspace_id=workspace_id,
                brand_id=brand_id,
                platform=platform,
                platform_account_id=platform_account_id,
                display_name="Acme Page",
                platform_data_json=json.dumps(platform_data or {}),
                credentials_encrypted=encrypt_credentials(
                    CredentialBlob(
                        platform=credential_platform,
                        data=credentials if credentials is not None else {"accessToken": "page-token"},
                    )
                ),
                token_data_json=json.dumps(token_data or {}),
                token_expires_at=token_expires_at,
            )
            session.add(account)
            session.commit()
            return account.id
        finally:
            session.close()

    def publication(
        self,
        workspace_id: str,
        brand_id: str,
        social_account_id: Optional[str],
        *,
        platform: str = "facebook",
        content_type: str = "image",
        payload: Optional[Dict[str, Any]] = None,
        status: str = "scheduled",
        scheduled_at: Optional[datetime] = None,
        client_request_id: Optional[str] = None,
    ) -> str:
        session = self._factory()
        try:
            publication = Publication(
                workspace_id=workspace_id,
                brand_id=brand_id,
                social_account_id=social_account_id,
                platform=platform,
                content_type=content_type,
                status=status,
                payload_json=json.dumps(
                    payload or {"contentType": "PHOTO", "imageMediaId": "media/photo.jpg", "message": "Hello"}
                ),
                scheduled_at=scheduled_at,
                client_request_id=client_request_id,
            )
            session.add(publication)
            session.commit()
            return publication.id
        finally:
            session.close()


def _clear_caches() -> None:
    get_settings.cache_clear()
    get_token_key.cache_clear()
    get_graph_client.cache_clear()
    get_redis_client.cache_clear()
    observability.reset_observability_for_tests()


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", "test-token-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite://")
    monkeypatch.setenv("MEDIA_PUBLIC_BASE_URL", "https://cdn.example.com")
    monkeypatch.setenv("FACEBOOK_APP_ID", "app-id")
    monkeypatch.setenv("FACEBOOK_APP_SECRET", "app-secret")
    monkeypatch.setenv("SENTRY_DSN", "")
    _clear_caches()
    yield
    _clear_caches()


@pytest.fixture
def session_factory() -> sessionmaker:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)
