"""SQLAlchemy models for the application."""

from .deletion_job import DeletionJob, DeletionStatus
from .document import Document
from .identity import Identity

__all__ = [
    "DeletionJob",
    "DeletionStatus",
    "Document",
    "Identity",
]
