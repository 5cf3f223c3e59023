"""OAuth continuation - hand the user to the bank and remember where to resume.

Starting an OAuth hand-off never blocks: the resume context is written to
durable storage, the URL is handed to an opener, and control returns. The
out-of-band callback later reads the context back and resumes the sync.
"""

import logging
import webbrowser
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from models import Connection
from services.app_state_service import AppStateService

logger = logging.getLogger(__name__)

# Single slot: only one OAuth flow is in flight at a time, last write wins.
OAUTH_RESUME_KEY = "oauth.resume_target"


@dataclass
class ResumeContext:
    target: str
    connection_id: str
    local_id: str | None = None


def log_only_opener(url: str) -> None:
    """Opener for server contexts, where the client opens the URL itself."""
    logger.info("OAuth URL ready for client: %s", url)


class OAuthContinuation:
    """Persist the resume context, then open the authentication URL.

    Args:
        opener: Receives the URL. Defaults to the system web browser.
    """

    def __init__(self, opener: Callable[[str], object] = webbrowser.open):
        self._opener = opener

    def begin(
        self,
        db: Session,
        url: str,
        resume_target: str,
        connection: Connection | None = None,
    ) -> ResumeContext:
        """Store ``resume_target`` and hand ``url`` to the opener.

        The context is persisted before the opener runs so a callback
        arriving immediately still finds it.
        """
        context = ResumeContext(
            target=resume_target,
            connection_id=connection.connection_id if connection is not None else "",
            local_id=connection.id if connection is not None else None,
        )
        AppStateService.set(
            db,
            OAUTH_RESUME_KEY,
            {
                "target": context.target,
                "connection_id": context.connection_id,
                "local_id": context.local_id,
            },
        )
        logger.info(
            "OAuth started for connection %s (resume target %s)",
            context.connection_id or "-", resume_target,
        )
        self._opener(url)
        return context

    @staticmethod
    def peek(db: Session) -> ResumeContext | None:
        """Read the stored resume context without clearing it."""
        stored = AppStateService.get(db, OAUTH_RESUME_KEY)
        if not isinstance(stored, dict):
            return None
        return ResumeContext(
            target=stored.get("target", ""),
            connection_id=stored.get("connection_id", ""),
            local_id=stored.get("local_id"),
        )

    @staticmethod
    def consume(db: Session) -> ResumeContext | None:
        """Read and clear the stored resume context."""
        context = OAuthContinuation.peek(db)
        if context is not None:
            AppStateService.delete(db, OAUTH_RESUME_KEY)
        return context
