"""
Shared fixtures for the FaceGate test suite.
"""
from types import SimpleNamespace

import numpy as np
import pytest
import pytest_asyncio

from facegate.database import Database
from facegate.embedding_store import EmbeddingStore
from facegate.errors import NoFaceDetected
from facegate.services import FaceGate
from facegate.similarity import SimilarityEngine

DIM = 4

E1 = [1.0, 0.0, 0.0, 0.0]
E2 = [0.0, 1.0, 0.0, 0.0]
E3 = [0.9, 0.1, 0.0, 0.0]


class FakeFaceModel:
    """Face model stand-in mapping known image bytes to embeddings."""

    def __init__(self):
        self.embeddings = {}
        self.model_loaded = True
        self.embed_calls = 0

    def register(self, image_bytes: bytes, embedding):
        self.embeddings[image_bytes] = embedding

    def embed(self, image_bytes: bytes) -> np.ndarray:
        self.embed_calls += 1
        value = self.embeddings.get(image_bytes)
        if value is None:
            raise NoFaceDetected()
        if isinstance(value, Exception):
            raise value
        return np.asarray(value, dtype=np.float32)

    def detect(self, image_bytes: bytes):
        if image_bytes not in self.embeddings:
            raise NoFaceDetected()
        return SimpleNamespace(
            box={"x": 10, "y": 20, "w": 100, "h": 120},
            landmarks={"left_eye": [40, 60], "right_eye": [80, 60]},
            confidence=0.99,
            spoofing=False,
            spoof_score=0.97,
            multiple_faces=False,
            face_count=1
        )

    def spoofing(self, image_bytes: bytes):
        return self.detect(image_bytes)


@pytest.fixture
def face_model():
    model = FakeFaceModel()
    model.register(b"img-e1", E1)
    model.register(b"img-e2", E2)
    model.register(b"img-e3", E3)
    return model


@pytest.fixture
def engine():
    return SimilarityEngine(dimension=DIM, threshold=0.7)


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'facegate.db'}")
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(database, engine):
    return EmbeddingStore(database.session_maker, engine)


@pytest_asyncio.fixture
async def services(tmp_path, face_model):
    gate = FaceGate(
        Database(f"sqlite+aiosqlite:///{tmp_path / 'services.db'}"),
        face_model,
        dimension=DIM,
        threshold=0.7,
        bcrypt_rounds=4,
        max_live_scans=3,
        max_checks_per_second=50.0
    )
    await gate.startup()
    yield gate
    await gate.shutdown()
