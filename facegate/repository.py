"""
Repositories

Database operations for the identities and api_credentials tables using
SQLAlchemy async. Callers own the session and the transaction boundary.
"""
from typing import Optional, List, Sequence
from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from facegate.models import IdentityDB, CredentialDB, utcnow

logger = logging.getLogger(__name__)


class IdentityRepository:
    """
    Repository class for identities database operations.

    All methods are async and require an AsyncSession.
    """

    @staticmethod
    async def create(
        session: AsyncSession,
        name: str,
        embedding: List[float]
    ) -> IdentityDB:
        """
        Create a new identity in the database.

        Args:
            session: Database session
            name: Display name
            embedding: Validated embedding as a list of floats

        Returns:
            Created IdentityDB instance with its assigned id
        """
        db_record = IdentityDB(
            name=name,
            embedding=embedding,
            created_at=utcnow()
        )

        session.add(db_record)
        await session.commit()
        await session.refresh(db_record)

        logger.info(f"Created identity {db_record.id} ('{name}')")
        return db_record

    @staticmethod
    async def get_by_id(session: AsyncSession, identity_id: int) -> Optional[IdentityDB]:
        """Get an identity by its id."""
        result = await session.execute(
            select(IdentityDB).where(IdentityDB.id == identity_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_many(session: AsyncSession, ids: Sequence[int]) -> dict[int, IdentityDB]:
        """
        Get multiple identities by id.

        Returns:
            Dictionary mapping id to IdentityDB
        """
        if not ids:
            return {}

        result = await session.execute(
            select(IdentityDB).where(IdentityDB.id.in_(list(ids)))
        )
        return {record.id: record for record in result.scalars().all()}

    @staticmethod
    async def get_all(
        session: AsyncSession,
        skip: int = 0,
        limit: Optional[int] = None
    ) -> List[IdentityDB]:
        """Get identities, most recent enrollment first."""
        query = (
            select(IdentityDB)
            .order_by(IdentityDB.created_at.desc(), IdentityDB.id.desc())
            .offset(skip)
        )
        if limit is not None:
            query = query.limit(limit)

        result = await session.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def count(session: AsyncSession) -> int:
        """Get total count of identities."""
        result = await session.execute(select(func.count(IdentityDB.id)))
        return result.scalar() or 0

    @staticmethod
    async def hard_delete(session: AsyncSession, identity_id: int) -> bool:
        """
        Permanently delete an identity.

        Returns:
            True if deleted, False if not found
        """
        result = await session.execute(
            delete(IdentityDB).where(IdentityDB.id == identity_id)
        )
        await session.commit()

        if result.rowcount > 0:
            logger.info(f"Hard deleted identity {identity_id}")
            return True
        return False


class CredentialRepository:
    """
    Repository class for api_credentials database operations.
    """

    @staticmethod
    async def create(
        session: AsyncSession,
        secret_hash: str,
        prefix: str,
        label: str
    ) -> CredentialDB:
        db_record = CredentialDB(
            secret_hash=secret_hash,
            prefix=prefix,
            label=label,
            is_active=True,
            created_at=utcnow()
        )

        session.add(db_record)
        await session.commit()
        await session.refresh(db_record)

        logger.info(f"Created credential {db_record.id} (prefix: {prefix})")
        return db_record

    @staticmethod
    async def get_all(session: AsyncSession, active_only: bool = False) -> List[CredentialDB]:
        """Get credentials, newest first."""
        query = select(CredentialDB)

        if active_only:
            query = query.where(CredentialDB.is_active == True)

        query = query.order_by(CredentialDB.created_at.desc(), CredentialDB.id.desc())

        result = await session.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def revoke(session: AsyncSession, credential_id: int) -> bool:
        """
        Revoke a credential by setting is_active to False.

        Returns:
            True if revoked, False if not found or already revoked
        """
        result = await session.execute(
            update(CredentialDB)
            .where(CredentialDB.id == credential_id)
            .where(CredentialDB.is_active == True)
            .values(is_active=False, revoked_at=utcnow())
        )
        await session.commit()

        if result.rowcount > 0:
            logger.info(f"Revoked credential {credential_id}")
            return True
        return False
