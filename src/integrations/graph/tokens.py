"""Token freshness for Graph-backed social accounts.

``ensure_valid`` is the single entry point used by publication workers. It
walks an ordered chain of policies; each one either settles the outcome or
falls through to the next:

1. the token is not close to expiry: validate it, and reuse it even when
   validation fails or errors out;
2. the token is close to expiry and no parent (user) token is stored: reuse
   it until it hard-expires, then require re-authentication;
3. a parent token is stored: derive a fresh token and persist it;
4. the refresh failed: reuse the old token, and once it has hard-expired
   record the account as expired so operators can see it.

Publishing is still attempted with a possibly-stale token; the provider's own
rejection is treated as the authoritative signal.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Callable, Optional, Sequence

from sqlalchemy.orm import Session

from src.core.config import get_settings
from src.core.errors import CredentialsError, NotFoundError, PipelineError, ProviderError, ReauthRequiredError
from src.core.logger import get_logger
from src.integrations.graph.client import GraphAPIClient, GraphAPIError, get_graph_client
from src.storage.models import SocialAccount
from src.storage.security import (
    PLATFORM_FACEBOOK_PAGE,
    PLATFORM_INSTAGRAM_BASIC,
    PLATFORM_INSTAGRAM_BUSINESS,
    CredentialBlob,
    decrypt_credentials,
    encrypt_credentials,
)


logger = get_logger("socialdesk.integrations.graph.tokens")

ACCOUNT_STATUS_ACTIVE = "active"
ACCOUNT_STATUS_EXPIRED = "expired"
REFRESH_FAILED_CODE = "REFRESH_FAILED"


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class LongLivedToken:
    token: str
    expires_in: int


@dataclass(frozen=True)
class RefreshedToken:
    token: str
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class EnsuredToken:
    token: str
    was_refreshed: bool


@dataclass
class TokenContext:
    session: Session
    account: SocialAccount
    credentials: CredentialBlob
    platform_data: dict[str, Any]
    token_data: dict[str, Any]
    now: datetime
    expiring_soon: bool
    hard_expired: bool
    refresh_error: Optional[Exception] = field(default=None)

    @property
    def current_token(self) -> str:
        return self.credentials.access_token

    @property
    def parent_token(self) -> Optional[str]:
        value = self.token_data.get("userAccessToken") or self.token_data.get("user_access_token")
        return str(value) if value else None

    def reuse(self) -> EnsuredToken:
        return EnsuredToken(token=self.current_token, was_refreshed=False)


TokenPolicy = Callable[["GraphTokenService", TokenContext], Optional[EnsuredToken]]


def _normalize_dt(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _load_json_object(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _coerce_expires_in(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, ProviderError) and exc.code and exc.code != ProviderError.code:
        return str(exc.code)
    return REFRESH_FAILED_CODE


def reuse_while_fresh(service: GraphTokenService, ctx: TokenContext) -> Optional[EnsuredToken]:
    if ctx.expiring_soon:
        return None
    validation = service.validate(ctx.current_token, service.provider_account_id(ctx))
    if not validation.valid:
        logger.warning(
            "social_token_validation_failed_reusing",
            social_account_id=ctx.account.id,
            platform=service.platform,
            error=validation.error,
        )
    return ctx.reuse()


def reuse_or_reauth_without_parent(service: GraphTokenService, ctx: TokenContext) -> Optional[EnsuredToken]:
    if ctx.parent_token:
        return None
    if not ctx.hard_expired:
        logger.warning(
            "social_token_expiring_without_parent_token",
            social_account_id=ctx.account.id,
            platform=service.platform,
            token_expires_at=_normalize_dt(ctx.account.token_expires_at).isoformat(),
        )
        return ctx.reuse()
    service.mark_expired(ctx, code=ReauthRequiredError.code)
    raise ReauthRequiredError(
        f"{service.platform} access token expired and no user access token is stored to refresh it. "
        "The account needs re-authentication."
    )


def refresh_from_parent(service: GraphTokenService, ctx: TokenContext) -> Optional[EnsuredToken]:
    if ctx.parent_token is None:
        return None
    try:
        refreshed = service.refresh_from_parent_token(ctx.parent_token, service.refresh_account_id(ctx))
    except PipelineError as exc:
        ctx.refresh_error = exc
        logger.error(
            "social_token_refresh_failed",
            social_account_id=ctx.account.id,
            platform=service.platform,
            error=str(exc),
        )
        return None
    service.persist_refreshed(ctx, refreshed)
    logger.info(
        "social_token_refreshed",
        social_account_id=ctx.account.id,
        platform=service.platform,
        token_expires_at=refreshed.expires_at.isoformat() if refreshed.expires_at else None,
    )
    return EnsuredToken(token=refreshed.token, was_refreshed=True)


def reuse_after_failed_refresh(service: GraphTokenService, ctx: TokenContext) -> Optional[EnsuredToken]:
    if ctx.refresh_error is None:
        return None
    if ctx.hard_expired:
        service.mark_expired(ctx, code=_error_code(ctx.refresh_error))
        logger.warning(
            "social_token_expired_refresh_failed_reusing",
            social_account_id=ctx.account.id,
            platform=service.platform,
        )
    else:
        logger.warning(
            "social_token_refresh_failed_reusing",
            social_account_id=ctx.account.id,
            platform=service.platform,
        )
    return ctx.reuse()


DEFAULT_POLICIES: tuple[TokenPolicy, ...] = (
    reuse_while_fresh,
    reuse_or_reauth_without_parent,
    refresh_from_parent,
    reuse_after_failed_refresh,
)


class GraphTokenService:
    """Shared token lifecycle for accounts whose tokens come from Facebook Login."""

    platform = ""
    credential_platforms: tuple[str, ...] = ()
    validation_fields = "id,name"

    def __init__(
        self,
        *,
        graph_client: Optional[GraphAPIClient] = None,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        lookahead_days: Optional[int] = None,
        default_expires_in: Optional[int] = None,
        policies: Optional[Sequence[TokenPolicy]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        settings = get_settings()
        self._graph = graph_client or get_graph_client()
        self._app_id = settings.facebook_app_id if app_id is None else app_id
        self._app_secret = settings.facebook_app_secret if app_secret is None else app_secret
        self._lookahead = timedelta(
            days=settings.token_refresh_lookahead_days if lookahead_days is None else lookahead_days
        )
        self._default_expires_in = default_expires_in or settings.token_default_long_lived_seconds
        self._policies = tuple(policies) if policies is not None else DEFAULT_POLICIES
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return _normalize_dt(self._clock())

    def is_expired_or_expiring_soon(self, account: SocialAccount, *, now: Optional[datetime] = None) -> bool:
        expires_at = _normalize_dt(account.token_expires_at)
        if expires_at is None:
            return False
        return expires_at - (now or self._now()) <= self._lookahead

    def is_hard_expired(self, account: SocialAccount, *, now: Optional[datetime] = None) -> bool:
        expires_at = _normalize_dt(account.token_expires_at)
        if expires_at is None:
            return False
        return expires_at <= (now or self._now())

    def validate(self, token: str, provider_account_id: Optional[str] = None) -> TokenValidation:
        """Make one lightweight call; failures are reported, never raised."""

        try:
            body = self._graph.get(
                provider_account_id or "me",
                access_token=token,
                params={"fields": self.validation_fields},
                context="token_validate",
            )
        except PipelineError as exc:
            return TokenValidation(valid=False, error=str(exc))
        if not body.get("id"):
            return TokenValidation(valid=False, error="Token validation returned no id")
        return TokenValidation(valid=True)

    def exchange_for_long_lived(self, short_lived_token: str) -> LongLivedToken:
        if not self._app_id or not self._app_secret:
            raise ProviderError(
                "FACEBOOK_APP_ID and FACEBOOK_APP_SECRET are required to exchange tokens",
                provider="meta",
                code="APP_CREDENTIALS_MISSING",
            )
        body = self._graph.get(
            "oauth/access_token",
            access_token=None,
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self._app_id,
                "client_secret": self._app_secret,
                "fb_exchange_token": short_lived_token,
            },
            context="token_exchange",
        )
        token = str(body.get("access_token") or "").strip()
        if not token:
            raise GraphAPIError("token_exchange: response did not include an access token")
        expires_in = _coerce_expires_in(body.get("expires_in")) or self._default_expires_in
        return LongLivedToken(token=token, expires_in=expires_in)

    def refresh_from_parent_token(self, parent_token: str, provider_account_id: str) -> RefreshedToken:
        """Derive a page token from the user token, then try to make it long-lived."""

        body = self._graph.get(
            provider_account_id,
            access_token=parent_token,
            params={"fields": "access_token"},
            context="token_refresh_page",
        )
        page_token = str(body.get("access_token") or "").strip()
        if not page_token:
            raise GraphAPIError("token_refresh_page: page access token not found in response")

        try:
            long_lived = self.exchange_for_long_lived(page_token)
        except PipelineError as exc:
            # Page tokens derived from a long-lived user token do not expire.
            logger.warning(
                "social_token_long_lived_exchange_failed",
                platform=self.platform,
                provider_account_id=provider_account_id,
                error=str(exc),
            )
            return RefreshedToken(token=page_token, expires_at=None)
        return RefreshedToken(
            token=long_lived.token,
            expires_at=self._now() + timedelta(seconds=long_lived.expires_in),
        )

    def provider_account_id(self, ctx: TokenContext) -> Optional[str]:
        return ctx.account.platform_account_id or None

    def refresh_account_id(self, ctx: TokenContext) -> str:
        account_id = self.provider_account_id(ctx)
        if not account_id:
            raise CredentialsError(f"{self.platform} account has no provider account id to refresh against")
        return account_id

    def load_context(self, session: Session, social_account_id: str) -> TokenContext:
        account = session.get(SocialAccount, social_account_id)
        if account is None:
            raise NotFoundError(f"Social account not found: {social_account_id}")
        if account.platform != self.platform:
            raise CredentialsError(
                f"Social account {social_account_id} is a {account.platform} account, expected {self.platform}"
            )
        credentials = decrypt_credentials(
            account.credentials_encrypted,
            allowed_platforms=self.credential_platforms,
        )
        now = self._now()
        return TokenContext(
            session=session,
            account=account,
            credentials=credentials,
            platform_data=_load_json_object(account.platform_data_json),
            token_data=_load_json_object(account.token_data_json),
            now=now,
            expiring_soon=self.is_expired_or_expiring_soon(account, now=now),
            hard_expired=self.is_hard_expired(account, now=now),
        )

    def ensure_valid(self, session: Session, social_account_id: str) -> EnsuredToken:
        ctx = self.load_context(session, social_account_id)
        for policy in self._policies:
            result = policy(self, ctx)
            if result is not None:
                return result
        raise PipelineError(f"No token policy settled social account {social_account_id}")

    def persist_refreshed(self, ctx: TokenContext, refreshed: RefreshedToken) -> None:
        data = dict(ctx.credentials.data)
        data["accessToken"] = refreshed.token
        data["expiresAt"] = refreshed.expires_at.isoformat() if refreshed.expires_at else None
        ctx.credentials = replace(ctx.credentials, data=data)

        account = ctx.account
        account.credentials_encrypted = encrypt_credentials(ctx.credentials)
        account.token_expires_at = refreshed.expires_at
        account.last_synced_at = ctx.now
        account.last_error_code = None
        account.status = ACCOUNT_STATUS_ACTIVE
        ctx.session.commit()

    def mark_expired(self, ctx: TokenContext, *, code: str) -> None:
        ctx.account.status = ACCOUNT_STATUS_EXPIRED
        ctx.account.last_error_code = code
        ctx.session.commit()


class FacebookTokenService(GraphTokenService):
    platform = "facebook"
    credential_platforms = (PLATFORM_FACEBOOK_PAGE,)

    def provider_account_id(self, ctx: TokenContext) -> Optional[str]:
        page_id = ctx.platform_data.get("pageId") or ctx.credentials.data.get("pageId")
        return str(page_id) if page_id else (ctx.account.platform_account_id or None)


class InstagramTokenService(GraphTokenService):
    platform = "instagram"
    credential_platforms = (PLATFORM_INSTAGRAM_BUSINESS, PLATFORM_INSTAGRAM_BASIC)
    validation_fields = "id,username"

    def provider_account_id(self, ctx: TokenContext) -> Optional[str]:
        ig_user_id = ctx.platform_data.get("igBusinessAccountId") or ctx.credentials.data.get("igBusinessAccountId")
        return str(ig_user_id) if ig_user_id else (ctx.account.platform_account_id or None)

    def refresh_account_id(self, ctx: TokenContext) -> str:
        # Instagram business accounts publish with the linked Facebook Page token.
        page_id = ctx.platform_data.get("facebookPageId") or ctx.credentials.data.get("pageId")
        if not page_id:
            raise CredentialsError("Instagram account has no linked Facebook Page to refresh its token from")
        return str(page_id)
