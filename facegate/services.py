"""
Service container

Builds and owns every long-lived FaceGate component. One instance is
created per application and handed to request handlers explicitly.
"""
import logging
from typing import List, Optional

import numpy as np
from starlette.concurrency import run_in_threadpool

from facegate.config import (
    BCRYPT_ROUNDS,
    EMBEDDING_DIM,
    MATCHER_BACKEND,
    MAX_CHECKS_PER_SECOND,
    MAX_LIVE_SCANS,
    TOP_K_MATCHES,
    VERIFICATION_THRESHOLD
)
from facegate.credentials import CredentialStore
from facegate.database import Database
from facegate.embedding_store import EmbeddingStore, Identity
from facegate.live_scan import LiveScanManager
from facegate.matching import MatchResult, MatchSearch, build_matcher
from facegate.similarity import Comparison, EmbeddingLike, SimilarityEngine

logger = logging.getLogger(__name__)


class FaceGate:
    """
    Application services.

    Args:
        database: Database owning the engine and sessions
        face_model: Object providing detect/embed/spoofing on image bytes
    """

    def __init__(
        self,
        database: Database,
        face_model,
        dimension: int = EMBEDDING_DIM,
        threshold: float = VERIFICATION_THRESHOLD,
        matcher_backend: str = MATCHER_BACKEND,
        bcrypt_rounds: int = BCRYPT_ROUNDS,
        max_live_scans: int = MAX_LIVE_SCANS,
        max_checks_per_second: float = MAX_CHECKS_PER_SECOND
    ):
        self.database = database
        self.face_model = face_model
        self.engine = SimilarityEngine(dimension=dimension, threshold=threshold)
        self.store = EmbeddingStore(database.session_maker, self.engine)
        self.matcher = build_matcher(self.store, self.engine, matcher_backend)
        self.search = MatchSearch(self.engine, self.matcher)
        self.credentials = CredentialStore(database.session_maker, rounds=bcrypt_rounds)
        self.live_scans = LiveScanManager(
            self.engine,
            face_model,
            max_scans=max_live_scans,
            max_checks_per_second=max_checks_per_second
        )

    async def startup(self):
        await self.database.init()
        await self.matcher.load(await self.store.list_all())
        logger.info(f"FaceGate ready ({await self.store.count()} identities enrolled)")

    async def shutdown(self):
        await self.live_scans.close_all()
        await self.database.close()

    # Face model calls block; keep them off the event loop

    async def embed_image(self, image_bytes: bytes) -> np.ndarray:
        return await run_in_threadpool(self.face_model.embed, image_bytes)

    async def detect_image(self, image_bytes: bytes):
        return await run_in_threadpool(self.face_model.detect, image_bytes)

    async def spoofing_image(self, image_bytes: bytes):
        return await run_in_threadpool(self.face_model.spoofing, image_bytes)

    async def enroll(self, name: str, embedding: EmbeddingLike) -> Identity:
        identity = await self.store.insert(name, embedding)
        self.matcher.add(identity)
        return identity

    async def enroll_image(self, name: str, image_bytes: bytes) -> Identity:
        return await self.enroll(name, await self.embed_image(image_bytes))

    async def remove_identity(self, identity_id: int) -> None:
        await self.store.remove(identity_id)
        self.matcher.remove(identity_id)
        logger.info(f"Removed identity {identity_id}")

    async def search_image(
        self,
        image_bytes: bytes,
        k: int = TOP_K_MATCHES,
        threshold: Optional[float] = None
    ) -> List[MatchResult]:
        return await self.search.search(await self.embed_image(image_bytes), k=k, threshold=threshold)

    async def verify_images(
        self,
        first: bytes,
        second: bytes,
        threshold: Optional[float] = None
    ) -> Comparison:
        a = await self.embed_image(first)
        b = await self.embed_image(second)
        return self.engine.compare(a, b, threshold=threshold)
