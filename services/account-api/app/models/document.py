"""Document model backing the hierarchical document store."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from ..database import Base


class Document(Base):
    """A JSON document addressed by a ``collection/id[/sub/id...]`` path.

    ``collection`` is the id of the collection the document lives in (the
    second-to-last path segment) so collection-group scans can match every
    ``comments`` collection regardless of parent. ``parent_path`` is empty for
    top-level documents.
    """

    __tablename__ = "documents"

    path: Mapped[str] = mapped_column(String(1024), primary_key=True)
    collection: Mapped[str] = mapped_column(String(128), nullable=False)
    parent_path: Mapped[str] = mapped_column(
        String(1024), nullable=False, default="", index=True
    )
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.current_timestamp(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.current_timestamp(),
        onupdate=func.current_timestamp(),
        nullable=False,
    )

    __table_args__ = (Index("ix_documents_collection_path", "collection", "path"),)

    def __repr__(self) -> str:
        return f"<Document(path={self.path})>"
