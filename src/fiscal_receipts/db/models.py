from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fiscal_receipts.db.base import Base

SCHEMA = "fiscal_receipts"

__all__ = [
    "SCHEMA",
    "Base",
    "Business",
    "PortalCredentialRecord",
    "CommercialDocument",
    "CommercialDocumentLine",
]


class Business(Base):
    __tablename__ = "businesses"
    __table_args__ = {"schema": SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    owner_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    business_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    vat_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    fiscal_code: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=True
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    credentials: Mapped[PortalCredentialRecord | None] = relationship(
        back_populates="business", uselist=False, cascade="all, delete-orphan"
    )
    documents: Mapped[list[CommercialDocument]] = relationship(back_populates="business", passive_deletes=True)


class PortalCredentialRecord(Base):
    """Encrypted portal login (tax code, password, PIN). Every field is a cipher envelope."""

    __tablename__ = "portal_credentials"
    __table_args__ = {"schema": SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    business_id: Mapped[int] = mapped_column(
        ForeignKey(f"{SCHEMA}.businesses.id", ondelete="CASCADE", onupdate="NO ACTION"),
        nullable=False,
        unique=True,
        index=True,
    )

    encrypted_tax_code: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_password: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_pin: Mapped[str] = mapped_column(Text, nullable=False)
    key_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # NULL = never verified against the portal
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=True
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    business: Mapped[Business] = relationship(back_populates="credentials")

    def __repr__(self) -> str:
        return (
            f"PortalCredentialRecord(id={self.id}, business_id={self.business_id}, "
            f"key_version={self.key_version}, verified={self.verified_at is not None})"
        )


class CommercialDocument(Base):
    """
    One SALE or VOID submitted (or being submitted) to the authority.

    Request/response payloads are kept as-is for audit and replay.
    """

    __tablename__ = "commercial_documents"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_commercial_documents_idempotency_key"),
        {"schema": SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    business_id: Mapped[int] = mapped_column(
        ForeignKey(f"{SCHEMA}.businesses.id", ondelete="CASCADE", onupdate="NO ACTION"),
        nullable=False,
        index=True,
    )

    kind: Mapped[str] = mapped_column(String(8), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")

    # VOID documents point at the SALE they cancel
    voided_document_id: Mapped[int | None] = mapped_column(
        ForeignKey(f"{SCHEMA}.commercial_documents.id", ondelete="SET NULL", onupdate="NO ACTION"),
        nullable=True,
        index=True,
    )

    public_request: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    authority_request: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    authority_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    authority_transaction_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    authority_progressive: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=True
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    business: Mapped[Business] = relationship(back_populates="documents")
    lines: Mapped[list[CommercialDocumentLine]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="CommercialDocumentLine.line_index",
    )


class CommercialDocumentLine(Base):
    __tablename__ = "commercial_document_lines"
    __table_args__ = {"schema": SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(
        ForeignKey(f"{SCHEMA}.commercial_documents.id", ondelete="CASCADE", onupdate="NO ACTION"),
        nullable=False,
        index=True,
    )

    line_index: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False)
    gross_unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    vat_code: Mapped[str] = mapped_column(String(8), nullable=False)

    # the authority's idElementoContabile, known once the document is accepted
    authority_line_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    document: Mapped[CommercialDocument] = relationship(back_populates="lines")
