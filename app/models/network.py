"""Access concentrators and the PPPoE objects mirrored onto them."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class DeviceProtocol(enum.Enum):
    """Wire protocol used to manage a device."""
    api = "api"
    ssh = "ssh"


class Device(Base):
    """
    MikroTik access concentrator terminating PPPoE sessions.

    Read-only connection descriptor for the provisioning layer.
    """
    __tablename__ = "devices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    control_port: Mapped[int] = mapped_column(Integer, default=8728)
    shell_port: Mapped[int] = mapped_column(Integer, default=22)
    protocol: Mapped[DeviceProtocol] = mapped_column(
        Enum(DeviceProtocol, values_callable=lambda x: [e.value for e in x]),
        default=DeviceProtocol.api,
    )
    admin_user: Mapped[str] = mapped_column(String(120), nullable=False)
    admin_secret: Mapped[str | None] = mapped_column(String(255))
    use_ssl: Mapped[bool] = mapped_column(Boolean, default=False)
    verify_host_key: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    profiles = relationship("BandwidthProfile", back_populates="device")
    credentials = relationship("Credential", back_populates="device")


class BandwidthProfile(Base):
    """Named rate limit and session timeout bundle (a PPP profile)."""
    __tablename__ = "bandwidth_profiles"
    __table_args__ = (
        UniqueConstraint("device_id", "name", name="uq_bandwidth_profiles_device_name"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    device_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("devices.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    download_bps: Mapped[int] = mapped_column(BigInteger, default=0)
    upload_bps: Mapped[int] = mapped_column(BigInteger, default=0)
    session_timeout_seconds: Mapped[int] = mapped_column(Integer, default=0)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    device = relationship("Device", back_populates="profiles")
    credentials = relationship(
        "Credential", back_populates="profile", passive_deletes="all"
    )


class Credential(Base):
    """PPPoE login bound to one contract.

    The secret is stored in recoverable form; technicians read it back.
    """
    __tablename__ = "credentials"
    __table_args__ = (
        UniqueConstraint("device_id", "username", name="uq_credentials_device_username"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    device_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("devices.id"), nullable=False
    )
    profile_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bandwidth_profiles.id"), nullable=False
    )
    username: Mapped[str] = mapped_column(String(120), nullable=False)
    secret: Mapped[str | None] = mapped_column(String(255))
    comment: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_seen_online: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    device = relationship("Device", back_populates="credentials")
    profile = relationship("BandwidthProfile", back_populates="credentials")
    contract = relationship(
        "Contract", back_populates="credential", uselist=False, passive_deletes="all"
    )
