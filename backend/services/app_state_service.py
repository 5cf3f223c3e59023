"""App state service - durable key-value storage for small pieces of state."""

import json
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import AppState

logger = logging.getLogger(__name__)


class AppStateService:
    """Service for reading and writing :class:`AppState` values by key."""

    @staticmethod
    def get(db: Session, key: str) -> Any | None:
        """Get a single value by key, or None if not set."""
        state = AppStateService.get_record(db, key)
        if state is None:
            return None
        return json.loads(state.value)

    @staticmethod
    def get_record(db: Session, key: str) -> AppState | None:
        return db.query(AppState).filter(AppState.key == key).first()

    @staticmethod
    def set(db: Session, key: str, value: Any) -> AppState:
        """Create or replace a value. The last write wins."""
        state = AppStateService.get_record(db, key)
        serialized = json.dumps(value)

        if state is None:
            state = AppState(key=key, value=serialized)
            db.add(state)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                state = AppStateService.get_record(db, key)
                state.value = serialized
                db.commit()
                logger.info("Replaced app state (concurrent insert): %s", key)
            else:
                logger.info("Stored app state: %s", key)
        else:
            state.value = serialized
            db.commit()
            logger.info("Replaced app state: %s", key)

        db.refresh(state)
        return state

    @staticmethod
    def delete(db: Session, key: str) -> bool:
        """Delete a value by key. Returns True if deleted, False if not set."""
        state = AppStateService.get_record(db, key)
        if state is None:
            return False
        db.delete(state)
        db.commit()
        logger.info("Cleared app state: %s", key)
        return True
