"""Pydantic schemas for API request/response validation."""

from .account import AccountDeletionRequestResponse, AccountDeletionStatusResponse

__all__ = [
    "AccountDeletionRequestResponse",
    "AccountDeletionStatusResponse",
]
