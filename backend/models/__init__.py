"""SQLAlchemy ORM models."""

from .app_state import AppState
from .bank_account import BankAccount
from .bank_transaction import BankTransaction
from .connection import Connection
from .enums import (
    AccountKind,
    ChallengeKind,
    ConnectionStatus,
    ExecutionStatus,
    MovementKind,
    TransactionStatus,
)
from .sync_run import SyncRun
from .utils import generate_uuid

__all__ = [
    "AccountKind",
    "AppState",
    "BankAccount",
    "BankTransaction",
    "ChallengeKind",
    "Connection",
    "ConnectionStatus",
    "ExecutionStatus",
    "MovementKind",
    "SyncRun",
    "TransactionStatus",
    "generate_uuid",
]
