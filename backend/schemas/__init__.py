"""Pydantic request/response schemas."""

from .open_finance import (
    ActionResponse,
    BankAccountResponse,
    BankTransactionResponse,
    ChallengeFieldResponse,
    ConnectionResponse,
    ConnectRequest,
    ConnectTokenRequest,
    ConnectTokenResponse,
    CredentialFieldResponse,
    InstitutionResponse,
    LinkRequest,
    MFASubmitRequest,
    OAuthCallbackRequest,
    SyncSummaryResponse,
    WebhookResponse,
)

__all__ = [
    "ActionResponse",
    "BankAccountResponse",
    "BankTransactionResponse",
    "ChallengeFieldResponse",
    "ConnectRequest",
    "ConnectTokenRequest",
    "ConnectTokenResponse",
    "ConnectionResponse",
    "CredentialFieldResponse",
    "InstitutionResponse",
    "LinkRequest",
    "MFASubmitRequest",
    "OAuthCallbackRequest",
    "SyncSummaryResponse",
    "WebhookResponse",
]
