"""
Catalog Models - tables owned by the Stock API, read here for enrichment only
"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from movement_ledger.core import Base
from .base import UUIDMixin


class Product(Base, UUIDMixin):
    __tablename__ = "product"

    name = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(String(50))
    client_account_id = Column(Uuid(as_uuid=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    skus = relationship("Sku", back_populates="product")


class Sku(Base, UUIDMixin):
    __tablename__ = "sku"

    name_sku = Column(String(255), nullable=False)
    status = Column(Boolean, default=True, nullable=False)
    product_id = Column(Uuid(as_uuid=True), ForeignKey("product.id"), index=True)

    product = relationship("Product", back_populates="skus")


class Request(Base, UUIDMixin):
    __tablename__ = "request"

    client_account_id = Column(Uuid(as_uuid=True))
    status = Column(String(20), nullable=False)  # created, pending, approved, rejected, cancelled
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    documents = relationship("Document", back_populates="request")


class Document(Base, UUIDMixin):
    __tablename__ = "documents"

    s3_path = Column(String(500))
    request_id = Column(Uuid(as_uuid=True), ForeignKey("request.id"), index=True)
    textract_id = Column(String(255))
    bedrock_id = Column(String(255))

    request = relationship("Request", back_populates="documents")
