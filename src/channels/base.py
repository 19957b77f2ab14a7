"""Shared platform publish client contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Protocol, get_args

from src.schemas.publication import PublicationPayload


@dataclass(frozen=True)
class PublishOutcome:
    external_post_id: str
    permalink: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


class PlatformPublishClient(Protocol):
    platform: str

    def publish(self, account_id: str, payload: PublicationPayload, access_token: str) -> PublishOutcome:
        raise NotImplementedError


def payload_variants(union: Any) -> tuple[type, ...]:
    """Return the model classes of an ``Annotated[Union[...], Field(...)]`` payload union."""

    args = get_args(union)
    members = get_args(args[0]) if args else ()
    return members or args


def check_handlers_exhaustive(
    platform: str,
    union: Any,
    handlers: Mapping[type, Callable[..., PublishOutcome]],
) -> None:
    """Fail at import time when a payload variant has no publish handler."""

    missing = [variant.__name__ for variant in payload_variants(union) if variant not in handlers]
    if missing:
        raise RuntimeError(f"{platform} publish client has no handler for: {', '.join(sorted(missing))}")
