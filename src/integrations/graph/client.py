"""Meta Graph API transport shared by the Facebook and Instagram clients."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Mapping, Optional

import httpx

from src.core.config import get_settings
from src.core.errors import ProviderError, TransientError
from src.core.logger import get_logger


logger = get_logger("socialdesk.integrations.graph")

RETRYABLE_ERROR_CODES = frozenset({4, 17, 32, 613, 80001})
RETRYABLE_MESSAGE_PATTERNS = ("not ready", "please wait", "processing", "in progress")


class GraphAPIError(ProviderError):
    """Raised when the Graph API returns an error object or an unusable response."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        subcode: Optional[str] = None,
        error_type: Optional[str] = None,
        fbtrace_id: Optional[str] = None,
        status_code: Optional[int] = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message, provider="meta", code=code, status_code=status_code)
        self.subcode = subcode
        self.error_type = error_type
        self.fbtrace_id = fbtrace_id
        self.transient = transient

    @classmethod
    def from_error_body(
        cls,
        error: Mapping[str, Any],
        *,
        context: str,
        status_code: Optional[int] = None,
    ) -> GraphAPIError:
        code = error.get("code")
        subcode = error.get("error_subcode")
        return cls(
            f"{context}: {extract_error_message(error)}",
            code=str(code) if code is not None else None,
            subcode=str(subcode) if subcode is not None else None,
            error_type=error.get("type"),
            fbtrace_id=error.get("fbtrace_id"),
            status_code=status_code,
            transient=is_retryable_error(error),
        )

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        for key, value in (
            ("subcode", self.subcode),
            ("type", self.error_type),
            ("fbtrace_id", self.fbtrace_id),
        ):
            if value is not None:
                payload[key] = value
        if self.transient:
            payload["transient"] = True
        return payload


def extract_error_message(error: Optional[Mapping[str, Any]]) -> str:
    if not error:
        return "Unknown error"
    return str(error.get("error_user_msg") or error.get("message") or f"Graph API error (code: {error.get('code')})")


def is_retryable_error(error: Optional[Mapping[str, Any]]) -> bool:
    """Rate limits and "media not ready" responses clear up on their own."""

    if not error:
        return False
    try:
        code = int(error.get("code"))
    except (TypeError, ValueError):
        code = None
    if code in RETRYABLE_ERROR_CODES:
        return True
    message = str(error.get("error_user_msg") or error.get("message") or "").lower()
    return any(pattern in message for pattern in RETRYABLE_MESSAGE_PATTERNS)


class GraphAPIClient:
    def __init__(
        self,
        *,
        base_url: str = "https://graph.facebook.com/v19.0",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1.0, float(timeout_seconds))
        self._client = client

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _send(self, method: str, url: str, *, context: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._client is not None:
                return self._client.request(method, url, timeout=self._timeout_seconds, **kwargs)
            with httpx.Client(timeout=self._timeout_seconds) as client:
                return client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientError(f"{context}: request timed out after {self._timeout_seconds}s") from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"{context}: {exc.__class__.__name__}: {exc}") from exc

    def _parse(self, response: httpx.Response, *, context: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            detail = response.text.strip()
            if len(detail) > 240:
                detail = detail[:240] + "..."
            raise GraphAPIError(
                f"{context}: invalid JSON response status={response.status_code} detail={detail}",
                status_code=response.status_code,
                transient=response.status_code >= 500,
            ) from exc

        if not isinstance(body, dict):
            raise GraphAPIError(f"{context}: invalid payload format", status_code=response.status_code)
        error = body.get("error")
        if isinstance(error, dict):
            logger.warning(
                "graph_api_error_response",
                context=context,
                status_code=response.status_code,
                code=error.get("code"),
                subcode=error.get("error_subcode"),
                fbtrace_id=error.get("fbtrace_id"),
            )
            raise GraphAPIError.from_error_body(error, context=context, status_code=response.status_code)
        if response.status_code < 200 or response.status_code >= 300:
            raise GraphAPIError(
                f"{context}: request failed status={response.status_code}",
                status_code=response.status_code,
                transient=response.status_code >= 500,
            )
        return body

    def get(
        self,
        path: str,
        *,
        access_token: Optional[str],
        params: Optional[Dict[str, Any]] = None,
        context: str = "graph_get",
    ) -> Dict[str, Any]:
        query = dict(params or {})
        if access_token:
            query["access_token"] = access_token
        response = self._send("GET", self._url(path), params=query, context=context)
        return self._parse(response, context=context)

    def post(
        self,
        path: str,
        *,
        access_token: str,
        data: Optional[Dict[str, Any]] = None,
        context: str = "graph_post",
    ) -> Dict[str, Any]:
        form: Dict[str, str] = {"access_token": access_token}
        for key, value in (data or {}).items():
            if value is None:
                continue
            form[key] = str(value).lower() if isinstance(value, bool) else str(value)
        response = self._send("POST", self._url(path), data=form, context=context)
        return self._parse(response, context=context)

    def post_absolute(
        self,
        url: str,
        *,
        access_token: str,
        headers: Optional[Dict[str, str]] = None,
        context: str = "graph_upload",
    ) -> Dict[str, Any]:
        """POST to a provider-issued URL such as a video upload endpoint."""

        response = self._send(
            "POST",
            url,
            params={"access_token": access_token},
            headers=headers or {},
            context=context,
        )
        return self._parse(response, context=context)


@lru_cache(maxsize=1)
def get_graph_client() -> GraphAPIClient:
    settings = get_settings()
    return GraphAPIClient(
        base_url=settings.graph_api_root,
        timeout_seconds=settings.graph_api_timeout_seconds,
    )
