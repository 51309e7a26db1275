from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.backoffice.models import Base


class Module(Base):
    """
    An installed app for one company.

    Uninstall is a soft delete (``deleted_at``) so history rows keep pointing at
    an existing id; re-installing the same alias restores the row.
    """

    __tablename__ = "modules"
    __table_args__ = (
        UniqueConstraint("company_id", "alias", name="uq_modules_company_alias"),
        Index("idx_modules_alias", "alias"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    alias: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    histories: Mapped[list["ModuleHistory"]] = relationship(
        back_populates="module",
        order_by="ModuleHistory.id",
        lazy="selectin",
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class ModuleHistory(Base):
    """Insert-only audit row for a lifecycle action on a module."""

    __tablename__ = "module_histories"
    __table_args__ = (Index("idx_module_histories_module", "module_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    module_id: Mapped[int] = mapped_column(ForeignKey("modules.id"), nullable=False)
    category: Mapped[str | None] = mapped_column(String(128), nullable=True)
    version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    module: Mapped[Module] = relationship(back_populates="histories")
