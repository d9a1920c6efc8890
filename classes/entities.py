# classes/entities.py
import copy
from datetime import datetime, timezone
from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    String,
    Text,
    func,
    Index,
    JSON,
)

from typing import TypeAlias
Timestamp: TypeAlias = datetime
Base = declarative_base()


# Known status values; the column stays an open string.
MEMORIAL_STATUSES = (
    "draft",
    "pending",
    "approved",
    "published",
    "pending_approval",
    "pending_details",
)

TIER_SORT_ORDER = {
    "historian": 1,
    "legacy": 2,
    "storyteller": 3,
    "memorial": 4,
}
DEFAULT_TIER_SORT_ORDER = 4

# Keys that live in their own columns; anything else goes into Memorial.fields.
MEMORIAL_COLUMNS = (
    "name",
    "name_lowercase",
    "status",
    "curator_id",
    "relatives",
    "source_memorial_id",
    "relationship_to_source",
    "last_updated_by_function",
    "tier",
    "tier_sort_order",
)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Memorial(Base):
    __tablename__ = "memorial"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    name_lowercase: Mapped[str] = mapped_column(String, nullable=False, default="")
    status: Mapped[str | None] = mapped_column(String(40))
    curator_id: Mapped[str | None] = mapped_column(String(128))

    # [{"name": ..., "relationship": ..., "memorial_id": ...}, ...]
    relatives: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    source_memorial_id: Mapped[str | None] = mapped_column(String(128))
    relationship_to_source: Mapped[str | None] = mapped_column(String)

    last_updated_by_function: Mapped[Timestamp | None] = mapped_column(DateTime(timezone=True))

    tier: Mapped[str | None] = mapped_column(String(40))
    tier_sort_order: Mapped[int | None] = mapped_column(Integer)

    # bio, dates, photos, location, submitter info...
    fields: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[Timestamp] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[Timestamp] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_memorial_status_name_lowercase", "status", "name_lowercase"),
        Index("ix_memorial_curator_status", "curator_id", "status"),
    )

    def to_snapshot(self) -> dict:
        """
        JSON-safe view of the record, as seen by triggers and API callers.
        Open fields first so the typed columns always win.
        """
        snapshot = dict(self.fields or {})
        snapshot.update(
            {
                "id": self.id,
                "name": self.name,
                "name_lowercase": self.name_lowercase,
                "status": self.status,
                "curator_id": self.curator_id,
                "relatives": copy.deepcopy(list(self.relatives or [])),
                "source_memorial_id": self.source_memorial_id,
                "relationship_to_source": self.relationship_to_source,
                "last_updated_by_function": (
                    as_utc(self.last_updated_by_function).isoformat()
                    if self.last_updated_by_function
                    else None
                ),
                "tier": self.tier,
                "tier_sort_order": self.tier_sort_order,
                "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
            }
        )
        return snapshot


class QueueMessage(Base):
    __tablename__ = "queue_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column(String, nullable=False)      # "<app_key>::<document id>"
    receiver_id = Column(String, nullable=False)
    type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)

    # Set while a worker holds the message; the row is deleted only on ack.
    claimed_until = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_queue_messages_receiver_id", "receiver_id", "id"),
        Index("ix_queue_messages_receiver_sender", "receiver_id", "sender_id", "id"),
    )


TRIBUTE_STATUSES = ("pending", "approved")


class Tribute(Base):
    """Guest message left on a memorial page; shown once its curator approves it."""
    __tablename__ = "tribute"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    memorial_id: Mapped[str] = mapped_column(String(128), nullable=False)
    memorial_name: Mapped[str] = mapped_column(String, nullable=False, default="")

    author_name: Mapped[str] = mapped_column(String, nullable=False)
    author_uid: Mapped[str | None] = mapped_column(String(128))
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(40), nullable=False, default="pending")

    created_at: Mapped[Timestamp] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_tribute_memorial_status", "memorial_id", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "memorial_id": self.memorial_id,
            "memorial_name": self.memorial_name,
            "author_name": self.author_name,
            "message": self.message,
            "status": self.status,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }
