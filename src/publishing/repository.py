"""Persistence operations over the Publication entity."""

from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session, selectinload

from src.core.errors import NotFoundError, ValidationError
from src.publishing.types import (
    CreatePublicationData,
    ListPublicationsParams,
    ListPublicationsResult,
    PUBLICATION_STATUSES,
    STATUS_SCHEDULED,
    StatusPatch,
    content_type_for_payload,
    normalize_content_type,
    normalize_platform,
    statuses_allowed_before,
)
from src.schemas.publication import parse_payload
from src.storage.models import Publication


MAX_LIST_LIMIT = 100


def _json_dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def load_payload(publication: Publication) -> dict[str, Any]:
    try:
        parsed = json.loads(publication.payload_json or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def load_provider_response(publication: Publication) -> dict[str, Any]:
    if not publication.provider_response_json:
        return {}
    try:
        parsed = json.loads(publication.provider_response_json)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def create_publication(session: Session, data: CreatePublicationData) -> Publication:
    """Validate the payload against the declared content type and add a new row."""

    platform = normalize_platform(data.platform)
    content_type = normalize_content_type(data.content_type)
    payload = parse_payload(platform, data.payload)
    payload_content_type = content_type_for_payload(payload)
    if payload_content_type != content_type:
        raise ValidationError(
            f"Payload content type {payload.content_type} does not match publication content type {content_type}"
        )
    if data.status not in PUBLICATION_STATUSES:
        raise ValidationError(f"Unknown publication status: {data.status}")

    publication = Publication(
        workspace_id=data.workspace_id,
        brand_id=data.brand_id,
        social_account_id=data.social_account_id,
        platform=platform,
        content_type=content_type,
        status=data.status,
        caption=data.caption,
        payload_json=_json_dumps(payload.to_json_dict()),
        scheduled_at=data.scheduled_at,
        client_request_id=data.client_request_id,
    )
    session.add(publication)
    session.flush()
    return publication


def get_publication(session: Session, publication_id: str) -> Optional[Publication]:
    return session.get(Publication, publication_id)


def update_publication_status(session: Session, publication_id: str, patch: StatusPatch) -> Publication:
    """Apply the provided status/terminal fields; untouched fields keep their values."""

    publication = session.get(Publication, publication_id)
    if publication is None:
        raise NotFoundError(f"Publication not found: {publication_id}")

    changes = patch.changes()
    if "status" in changes and changes["status"] not in PUBLICATION_STATUSES:
        raise ValidationError(f"Unknown publication status: {changes['status']}")
    provider_response = changes.pop("provider_response", None)
    for name, value in changes.items():
        setattr(publication, name, value)
    if provider_response is not None:
        publication.provider_response_json = _json_dumps(provider_response)
    publication.updated_at = _utcnow()
    session.flush()
    return publication


def reload_publication(session: Session, publication_id: str) -> Optional[Publication]:
    """Re-read the row, replacing whatever the identity map holds."""

    return session.get(Publication, publication_id, populate_existing=True)


def transition_publication_status(
    session: Session,
    publication_id: str,
    patch: StatusPatch,
) -> Optional[Publication]:
    """Apply ``patch`` only if the stored status may move to ``patch.status``.

    The status check and the write are a single conditional UPDATE. Returns the
    refreshed row, or None when the row is gone or its current status forbids
    the move (for example a cancel committed by another session).
    """

    changes = patch.changes()
    target = changes.get("status")
    if target not in PUBLICATION_STATUSES:
        raise ValidationError(f"Unknown publication status: {target}")
    provider_response = changes.pop("provider_response", None)
    if provider_response is not None:
        changes["provider_response_json"] = _json_dumps(provider_response)
    changes["updated_at"] = _utcnow()

    statement = (
        update(Publication)
        .where(
            Publication.id == publication_id,
            Publication.status.in_(statuses_allowed_before(target)),
        )
        .values(**changes)
        .execution_options(synchronize_session=False)
    )
    if session.execute(statement).rowcount == 0:
        return None
    return reload_publication(session, publication_id)


def get_publication_with_relations(session: Session, publication_id: str) -> Optional[Publication]:
    statement = (
        select(Publication)
        .where(Publication.id == publication_id)
        .options(
            selectinload(Publication.social_account),
            selectinload(Publication.brand),
            selectinload(Publication.workspace),
        )
        .execution_options(populate_existing=True)
    )
    return session.scalar(statement)


def find_by_client_request_id(
    session: Session,
    *,
    workspace_id: str,
    brand_id: str,
    client_request_id: str,
) -> Optional[Publication]:
    return session.scalar(
        select(Publication).where(
            Publication.workspace_id == workspace_id,
            Publication.brand_id == brand_id,
            Publication.client_request_id == client_request_id,
        )
    )


def list_by_brand(session: Session, params: ListPublicationsParams) -> ListPublicationsResult:
    """Keyset pagination ordered by ``(created_at desc, id desc)``; cursor is the last item id."""

    limit = max(1, min(int(params.limit), MAX_LIST_LIMIT))
    statement = select(Publication).where(Publication.brand_id == params.brand_id)
    if params.workspace_id:
        statement = statement.where(Publication.workspace_id == params.workspace_id)
    if params.status:
        statement = statement.where(Publication.status == params.status)
    if params.platform:
        statement = statement.where(Publication.platform == normalize_platform(params.platform))

    if params.cursor:
        anchor = session.get(Publication, params.cursor)
        if anchor is not None:
            statement = statement.where(
                or_(
                    Publication.created_at < anchor.created_at,
                    and_(Publication.created_at == anchor.created_at, Publication.id < anchor.id),
                )
            )

    rows = list(
        session.scalars(
            statement.order_by(Publication.created_at.desc(), Publication.id.desc()).limit(limit + 1)
        ).all()
    )
    has_more = len(rows) > limit
    items = rows[:limit]
    next_cursor = items[-1].id if has_more and items else None
    return ListPublicationsResult(items=items, next_cursor=next_cursor)


def list_scheduled_ready(
    session: Session,
    *,
    platform: Optional[str] = None,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> list[Publication]:
    reference = now or _utcnow()
    statement = select(Publication).where(
        Publication.status == STATUS_SCHEDULED,
        or_(Publication.scheduled_at.is_(None), Publication.scheduled_at <= reference),
    )
    if platform:
        statement = statement.where(Publication.platform == normalize_platform(platform))
    statement = statement.order_by(Publication.scheduled_at.asc(), Publication.created_at.asc()).limit(limit)
    return list(session.scalars(statement).all())
