"""
SQLAlchemy ORM Models for FaceGate

Defines the tables:
CREATE TABLE identities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    embedding JSON NOT NULL,
    created_at TIMESTAMP NOT NULL
);
CREATE TABLE api_credentials (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    secret_hash TEXT NOT NULL UNIQUE,
    prefix TEXT NOT NULL,
    label TEXT NOT NULL,
    is_active BOOLEAN DEFAULT true,
    created_at TIMESTAMP NOT NULL,
    revoked_at TIMESTAMP
);
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, Boolean, DateTime, Text, JSON

from facegate.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityDB(Base):
    """
    SQLAlchemy model for the identities table.

    Rows are written once at enrollment and never updated.
    """
    __tablename__ = "identities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    embedding = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<IdentityDB(id={self.id}, name='{self.name}')>"


class CredentialDB(Base):
    """
    SQLAlchemy model for the api_credentials table.

    Only the bcrypt hash of the secret is stored; ``prefix`` is the
    non-secret leading fragment shown to administrators.
    """
    __tablename__ = "api_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    secret_hash = Column(Text, nullable=False, unique=True)
    prefix = Column(Text, nullable=False)
    label = Column(Text, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<CredentialDB(id={self.id}, prefix='{self.prefix}', label='{self.label}')>"
