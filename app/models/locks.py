import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class ResourceLock(Base):
    """One row per lockable key.

    ``held_by`` and ``locked_until`` form a lease: the holder's token stays
    on the row across its commits until it clears it, or until the lease
    runs out after a crash.
    """

    __tablename__ = "resource_locks"
    __table_args__ = (UniqueConstraint("key", name="uq_resource_locks_key"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    held_by: Mapped[str | None] = mapped_column(String(64))
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
