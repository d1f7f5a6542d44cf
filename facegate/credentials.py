"""
Credential Store and Validator

Issues opaque API secrets, persists only their bcrypt hash, validates
presented secrets and supports revocation.

Secrets look like ``fg_<43 url-safe characters>`` (256 bits of entropy from
the ``secrets`` module). The first few characters are stored as a
non-secret prefix so administrators can tell keys apart.
"""
import asyncio
import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import bcrypt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from facegate.config import (
    BCRYPT_ROUNDS,
    CREDENTIAL_PREFIX_LENGTH,
    CREDENTIAL_SECRET_BYTES,
    CREDENTIAL_SECRET_PREFIX
)
from facegate.errors import NotFound, StorageError, Unauthorized, ValidationError
from facegate.models import CredentialDB
from facegate.repository import CredentialRepository

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes of its input
BCRYPT_MAX_BYTES = 72
SECRET_ALPHABET = frozenset(string.ascii_letters + string.digits + "-_")


@dataclass(frozen=True)
class CredentialInfo:
    """Public view of a credential. Never carries the secret or its hash."""
    id: int
    prefix: str
    label: str
    created_at: datetime
    is_active: bool
    revoked_at: Optional[datetime] = None

    @classmethod
    def from_db(cls, db_record: CredentialDB) -> "CredentialInfo":
        return cls(
            id=db_record.id,
            prefix=db_record.prefix,
            label=db_record.label,
            created_at=db_record.created_at,
            is_active=db_record.is_active,
            revoked_at=db_record.revoked_at
        )


@dataclass(frozen=True)
class IssuedCredential:
    """Returned once by ``issue``; the plaintext secret is not kept anywhere."""
    secret: str = field(repr=False)
    credential: CredentialInfo


class CredentialLookup:
    """Selects which stored credentials a presented secret is checked against."""

    async def candidates(self, session: AsyncSession, presented: str) -> List[CredentialDB]:
        raise NotImplementedError


class FullScanLookup(CredentialLookup):
    """Every active credential. O(active credentials) bcrypt checks per call."""

    async def candidates(self, session: AsyncSession, presented: str) -> List[CredentialDB]:
        return await CredentialRepository.get_all(session, active_only=True)


class CredentialStore:
    """
    Issues, validates and revokes API credentials.

    Validation holds no mutable state and may run concurrently; bcrypt work
    is pushed to worker threads to keep the event loop responsive.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        rounds: int = BCRYPT_ROUNDS,
        lookup: Optional[CredentialLookup] = None,
        secret_prefix: str = CREDENTIAL_SECRET_PREFIX,
        prefix_length: int = CREDENTIAL_PREFIX_LENGTH,
        secret_bytes: int = CREDENTIAL_SECRET_BYTES
    ):
        self._session_maker = session_maker
        self._rounds = rounds
        self._lookup = lookup or FullScanLookup()
        self._secret_prefix = secret_prefix
        self._prefix_length = prefix_length
        self._secret_bytes = secret_bytes

    def generate_secret(self) -> str:
        return self._secret_prefix + secrets.token_urlsafe(self._secret_bytes)

    def is_well_formed(self, presented) -> bool:
        """Cheap shape check run before touching storage."""
        if not isinstance(presented, str):
            return False
        if not presented.startswith(self._secret_prefix):
            return False
        body = presented[len(self._secret_prefix):]
        if not body or len(presented.encode("utf-8")) > BCRYPT_MAX_BYTES:
            return False
        return all(c in SECRET_ALPHABET for c in body)

    async def issue(self, label: str) -> IssuedCredential:
        """
        Issue a new credential.

        Args:
            label: Owner or purpose of the key

        Returns:
            IssuedCredential holding the plaintext secret. It cannot be
            retrieved again.
        """
        if not isinstance(label, str) or not label.strip():
            raise ValidationError("Credential label must be a non-empty string")
        label = label.strip()

        secret = self.generate_secret()
        secret_hash = await asyncio.to_thread(
            bcrypt.hashpw, secret.encode("utf-8"), bcrypt.gensalt(rounds=self._rounds)
        )

        async with self._session_maker() as session:
            try:
                db_record = await CredentialRepository.create(
                    session=session,
                    secret_hash=secret_hash.decode("utf-8"),
                    prefix=secret[:self._prefix_length],
                    label=label
                )
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to store credential: {e}")
                raise StorageError("Failed to store credential") from e

        logger.info(f"Issued credential {db_record.id} ('{label}', prefix {db_record.prefix})")
        return IssuedCredential(secret=secret, credential=CredentialInfo.from_db(db_record))

    async def validate(self, presented) -> bool:
        """
        Check a presented secret against the active credentials.

        Fails closed: malformed input, storage failures and revoked keys all
        return False.
        """
        try:
            return await self._check(presented)
        except StorageError:
            return False

    async def authenticate(self, presented) -> None:
        """
        Raise Unauthorized unless ``presented`` is a valid, active secret.

        Raises:
            Unauthorized: Malformed, unknown or revoked secret
            StorageError: Credentials could not be read (retryable)
        """
        if not await self._check(presented):
            raise Unauthorized("Missing, invalid or revoked API key")

    async def _check(self, presented) -> bool:
        if not self.is_well_formed(presented):
            return False

        async with self._session_maker() as session:
            try:
                candidates = await self._lookup.candidates(session, presented)
            except SQLAlchemyError as e:
                logger.error(f"Credential lookup failed: {e}")
                raise StorageError("Failed to look up credentials") from e
            hashes = [c.secret_hash for c in candidates]

        if not hashes:
            return False

        return await asyncio.to_thread(self._matches_any, presented, hashes)

    @staticmethod
    def _matches_any(presented: str, hashes: List[str]) -> bool:
        encoded = presented.encode("utf-8")
        for secret_hash in hashes:
            try:
                if bcrypt.checkpw(encoded, secret_hash.encode("utf-8")):
                    return True
            except ValueError:
                logger.warning("Skipping credential with a malformed hash")
        return False

    async def revoke(self, credential_id: int) -> None:
        """
        Revoke a credential. Its secret fails validation from now on.

        Raises:
            NotFound: Unknown or already revoked credential
        """
        async with self._session_maker() as session:
            try:
                revoked = await CredentialRepository.revoke(session, credential_id)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to revoke credential {credential_id}: {e}")
                raise StorageError("Failed to revoke credential") from e

        if not revoked:
            raise NotFound(f"Active credential with ID '{credential_id}' not found")

    async def list_all(self, active_only: bool = False) -> List[CredentialInfo]:
        """Enumerate credentials without secrets or hashes."""
        async with self._session_maker() as session:
            try:
                db_records = await CredentialRepository.get_all(session, active_only=active_only)
            except SQLAlchemyError as e:
                logger.error(f"Failed to list credentials: {e}")
                raise StorageError("Failed to list credentials") from e

        return [CredentialInfo.from_db(r) for r in db_records]
