import enum
import uuid

import uuid_utils
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


def generate_uuid7():
    """Generate UUIDv7 and convert to standard Python UUID"""
    uuid7_obj = uuid_utils.uuid7()
    return uuid.UUID(str(uuid7_obj))


# Settings blobs are JSONB on PostgreSQL and plain JSON text elsewhere (SQLite in tests).
JSONBlob = JSON().with_variant(JSONB(), "postgresql")

Base = declarative_base()


class DownloadStatus(str, enum.Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    FINISHED = "finished"
    FAILED = "failed"


class Channel(Base):
    __tablename__ = 'channels'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    name = Column(String(200), unique=True, nullable=False)
    settings = Column(JSONBlob, nullable=False, default=dict)
    postprocess_args = Column(JSONBlob, nullable=False, default=dict)
    last_scan = Column(DateTime)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    # Relationships
    urls = relationship(
        "ChannelURL",
        back_populates="channel",
        cascade="all, delete-orphan",
        order_by="ChannelURL.id",
    )
    videos = relationship(
        "Video",
        back_populates="channel",
        cascade="all, delete-orphan",
    )
    notifications = relationship(
        "Notification",
        back_populates="channel",
        cascade="all, delete-orphan",
        order_by="Notification.id",
    )

    def __repr__(self):
        return f"<Channel(id={self.id}, name='{self.name}')>"


class ChannelURL(Base):
    __tablename__ = 'channel_urls'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    channel_id = Column(Uuid(as_uuid=True), ForeignKey('channels.id', ondelete='CASCADE'), nullable=False)
    url = Column(String(2000), nullable=False)
    username = Column(String(500))
    password = Column(String(500))
    login_url = Column(String(2000))
    is_manual = Column(Boolean, default=False, nullable=False)
    paused = Column(Boolean, default=False, nullable=False)
    last_scan = Column(DateTime)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    # Relationship
    channel = relationship("Channel", back_populates="urls")

    __table_args__ = (
        UniqueConstraint('channel_id', 'url', name='uq_channel_urls_channel_id_url'),
    )

    def __repr__(self):
        return f"<ChannelURL(id={self.id}, channel_id={self.channel_id}, url='{self.url}')>"


class Video(Base):
    __tablename__ = 'videos'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    channel_id = Column(Uuid(as_uuid=True), ForeignKey('channels.id', ondelete='CASCADE'), nullable=False)
    channel_url_id = Column(Uuid(as_uuid=True), ForeignKey('channel_urls.id', ondelete='SET NULL'))
    url = Column(String(2000), nullable=False)
    finished = Column(Boolean, default=False, nullable=False)
    ignored = Column(Boolean, default=False, nullable=False)
    title = Column(String(500))
    description = Column(Text)
    metadata_json = Column("metadata", JSONBlob)
    download_status = Column(
        Enum(DownloadStatus, name="download_status", values_callable=lambda e: [m.value for m in e]),
        default=DownloadStatus.PENDING,
        nullable=False,
    )
    percentage = Column(Float, default=0.0, nullable=False)
    error = Column(Text)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    # Relationship
    channel = relationship("Channel", back_populates="videos")

    # One row per (channel, url) keeps ingestion at-most-once
    __table_args__ = (
        UniqueConstraint('channel_id', 'url', name='uq_videos_channel_id_url'),
        Index('ix_videos_channel_id_status', 'channel_id', 'download_status'),
    )

    def __repr__(self):
        return (
            f"<Video(id={self.id}, channel_id={self.channel_id}, url='{self.url}', "
            f"status='{self.download_status}')>"
        )


class Notification(Base):
    __tablename__ = 'notifications'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    channel_id = Column(Uuid(as_uuid=True), ForeignKey('channels.id', ondelete='CASCADE'), nullable=False)
    name = Column(String(200), nullable=False)
    notify_url = Column(String(2000), nullable=False)
    # Only notify when this channel URL got new videos; NULL means every pass that fetched something.
    channel_url = Column(String(2000))
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    # Relationship
    channel = relationship("Channel", back_populates="notifications")

    __table_args__ = (
        UniqueConstraint('channel_id', 'notify_url', name='uq_notifications_channel_id_notify_url'),
    )

    def __repr__(self):
        return f"<Notification(id={self.id}, channel_id={self.channel_id}, notify_url='{self.notify_url}')>"


class ProgramLock(Base):
    __tablename__ = 'program'

    id = Column(Integer, primary_key=True, default=1)
    running = Column(Boolean, default=False, nullable=False)
    pid = Column(Integer, default=0, nullable=False)
    host = Column(String(255))
    started_at = Column(DateTime)
    heartbeat = Column(DateTime)

    def __repr__(self):
        return f"<ProgramLock(running={self.running}, pid={self.pid}, host='{self.host}')>"
