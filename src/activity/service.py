"""Best-effort activity log sink."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from src.core.logger import get_logger
from src.storage.db import session_scope
from src.storage.models import ActivityEvent


logger = get_logger("socialdesk.activity")


def _json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


class ActivityLogger:
    """Write activity events in their own session so failures never touch the caller's state."""

    def __init__(self, *, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory

    def log_activity(
        self,
        *,
        type: str,
        workspace_id: Optional[str],
        user_id: Optional[str] = None,
        actor_type: str = "system",
        source: str = "worker",
        scope_type: Optional[str] = None,
        scope_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        swallow_errors: bool = True,
    ) -> Optional[str]:
        """Return the new event id, or None when the write failed and was swallowed."""

        try:
            with session_scope(self._session_factory) as session:
                event = ActivityEvent(
                    type=type,
                    workspace_id=workspace_id,
                    user_id=user_id,
                    actor_type=actor_type,
                    source=source,
                    scope_type=scope_type,
                    scope_id=scope_id,
                    metadata_json=_json(metadata or {}),
                )
                session.add(event)
                session.commit()
                return event.id
        except Exception as exc:
            if not swallow_errors:
                raise
            logger.error(
                "activity_log_write_failed",
                activity_type=type,
                workspace_id=workspace_id,
                scope_type=scope_type,
                scope_id=scope_id,
                error=str(exc),
            )
            return None
