"""
Embedding Store

Append-only store of enrolled identities. Validates every embedding against
the deployment dimension at insert time so reads never see a bad row.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from facegate.errors import NotFound, StorageError, ValidationError
from facegate.models import IdentityDB
from facegate.repository import IdentityRepository
from facegate.similarity import EmbeddingLike, SimilarityEngine

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255


@dataclass(frozen=True, eq=False)
class Identity:
    """An enrolled identity. Immutable once created."""
    id: int
    name: str
    embedding: np.ndarray
    created_at: datetime

    @classmethod
    def from_db(cls, db_record: IdentityDB) -> "Identity":
        embedding = np.asarray(db_record.embedding, dtype=np.float64)
        embedding.setflags(write=False)
        return cls(
            id=db_record.id,
            name=db_record.name,
            embedding=embedding,
            created_at=db_record.created_at
        )


def validate_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Identity name must be a non-empty string")
    name = name.strip()
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Identity name must be at most {MAX_NAME_LENGTH} characters")
    return name


class EmbeddingStore:
    """
    Holds enrolled identities in the database.

    Inserts are serialized with a lock so id assignment happens one row at a
    time; reads run unrestricted.
    """

    def __init__(self, session_maker: async_sessionmaker, engine: SimilarityEngine):
        self._session_maker = session_maker
        self._engine = engine
        self._insert_lock = asyncio.Lock()

    @property
    def dimension(self) -> int:
        return self._engine.dimension

    async def insert(self, name: str, embedding: EmbeddingLike) -> Identity:
        """
        Enroll a new identity.

        Raises:
            ValidationError: Empty name or malformed embedding
            DimensionMismatch: Embedding length differs from D
            StorageError: The row could not be written
        """
        name = validate_name(name)
        vector = self._engine.validate(embedding)

        async with self._insert_lock:
            async with self._session_maker() as session:
                try:
                    db_record = await IdentityRepository.create(
                        session=session,
                        name=name,
                        embedding=vector.tolist()
                    )
                except SQLAlchemyError as e:
                    await self._abort(session, "insert identity", e)

        return Identity.from_db(db_record)

    async def list_all(self, skip: int = 0, limit: Optional[int] = None) -> List[Identity]:
        """All identities, most recent enrollment first."""
        async with self._session_maker() as session:
            try:
                db_records = await IdentityRepository.get_all(session, skip=skip, limit=limit)
            except SQLAlchemyError as e:
                await self._abort(session, "list identities", e)
        return [Identity.from_db(r) for r in db_records]

    async def get(self, identity_id: int) -> Identity:
        async with self._session_maker() as session:
            try:
                db_record = await IdentityRepository.get_by_id(session, identity_id)
            except SQLAlchemyError as e:
                await self._abort(session, "get identity", e)

        if db_record is None:
            raise NotFound(f"Identity with ID '{identity_id}' not found")
        return Identity.from_db(db_record)

    async def get_many(self, ids: Sequence[int]) -> Dict[int, Identity]:
        async with self._session_maker() as session:
            try:
                db_records = await IdentityRepository.get_many(session, ids)
            except SQLAlchemyError as e:
                await self._abort(session, "get identities", e)
        return {identity_id: Identity.from_db(r) for identity_id, r in db_records.items()}

    async def count(self) -> int:
        async with self._session_maker() as session:
            try:
                return await IdentityRepository.count(session)
            except SQLAlchemyError as e:
                await self._abort(session, "count identities", e)

    async def remove(self, identity_id: int) -> None:
        """
        Administrative removal of an enrolled identity.

        Raises:
            NotFound: No identity with that id
        """
        async with self._session_maker() as session:
            try:
                deleted = await IdentityRepository.hard_delete(session, identity_id)
            except SQLAlchemyError as e:
                await self._abort(session, "delete identity", e)

        if not deleted:
            raise NotFound(f"Identity with ID '{identity_id}' not found")

    @staticmethod
    async def _abort(session: AsyncSession, action: str, error: SQLAlchemyError):
        await session.rollback()
        logger.error(f"Failed to {action}: {error}")
        raise StorageError(f"Failed to {action}") from error
