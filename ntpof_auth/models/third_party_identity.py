"""Stable (provider, subject) -> user mapping. Written once on first sign-in."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ntpof_auth.db.base import Base, UTCDateTime, utcnow


class ThirdPartyIdentity(Base):
    __tablename__ = "third_party_identities"
    __table_args__ = (UniqueConstraint("provider_id", "subject", name="uq_third_party_identities_provider_subject"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    user: Mapped["User"] = relationship("User", back_populates="identities")
