"""
Face Model adapter using DeepFace

This module wraps the external face model behind three operations:
- detect: bounding box, landmarks, confidence and spoof flag
- embed: a single L2-normalized ArcFace embedding
- spoofing: anti-spoofing verdict for the primary face

Everything here is blocking; async callers run it in a worker thread.
"""
import numpy as np
import cv2
from PIL import Image, UnidentifiedImageError
from io import BytesIO
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from deepface import DeepFace

from facegate.config import (
    FACE_RECOGNITION_MODEL,
    FACE_DETECTOR_BACKEND,
    ENABLE_ANTI_SPOOFING,
    MAX_IMAGE_SIZE
)
from facegate.errors import MultipleFacesDetected, NoFaceDetected, ValidationError

logger = logging.getLogger(__name__)

BOX_KEYS = ("x", "y", "w", "h")


@dataclass
class FaceDetection:
    """Detection result for the primary face in an image."""
    box: Optional[Dict[str, int]]
    landmarks: Dict[str, Optional[List[int]]] = field(default_factory=dict)
    confidence: float = 0.0
    spoofing: Optional[bool] = None
    spoof_score: Optional[float] = None
    multiple_faces: bool = False
    face_count: int = 0


class FaceModel:
    """
    DeepFace-backed face model.

    Uses RetinaFace for detection and ArcFace for embeddings. The model is
    loaded lazily on first use.
    """

    def __init__(
        self,
        model_name: str = FACE_RECOGNITION_MODEL,
        detector_backend: str = FACE_DETECTOR_BACKEND,
        anti_spoofing: bool = ENABLE_ANTI_SPOOFING
    ):
        self.model_name = model_name
        self.detector_backend = detector_backend
        self.anti_spoofing = anti_spoofing
        self._model_loaded = False

    @property
    def model_loaded(self) -> bool:
        return self._model_loaded

    def _ensure_model_loaded(self):
        """Lazy load the model on first use."""
        if not self._model_loaded:
            logger.info(f"Loading {self.model_name} model...")
            # Warm up the model by running a dummy inference
            try:
                dummy_img = np.zeros((224, 224, 3), dtype=np.uint8)
                DeepFace.represent(
                    img_path=dummy_img,
                    model_name=self.model_name,
                    detector_backend="skip",
                    enforce_detection=False
                )
                logger.info(f"{self.model_name} model loaded successfully")
            except Exception as e:
                logger.warning(f"Model warmup warning: {e}")
            self._model_loaded = True

    def preprocess_image(self, image_bytes: bytes) -> np.ndarray:
        """
        Preprocess image bytes into a BGR numpy array.

        Steps:
        1. Load image from bytes
        2. Convert to RGB
        3. Resize if too large (preserving aspect ratio)
        4. Convert to BGR, the channel order DeepFace expects for arrays

        Raises:
            ValidationError: If the bytes are not a decodable image
        """
        if not image_bytes:
            raise ValidationError("Empty image")

        try:
            image = Image.open(BytesIO(image_bytes))

            # Convert to RGB (handles PNG with alpha, grayscale, etc.)
            if image.mode != "RGB":
                image = image.convert("RGB")

            if image.size[0] > MAX_IMAGE_SIZE[0] or image.size[1] > MAX_IMAGE_SIZE[1]:
                image.thumbnail(MAX_IMAGE_SIZE, Image.Resampling.LANCZOS)
                logger.debug(f"Image resized to {image.size}")

            return cv2.cvtColor(np.array(image), cv2.COLOR_RGB2BGR)

        except (UnidentifiedImageError, OSError) as e:
            logger.error(f"Image preprocessing failed: {e}")
            raise ValidationError(f"Failed to process image: {e}")

    def _extract_faces(self, img_array: np.ndarray, anti_spoofing: bool) -> List[dict]:
        try:
            return DeepFace.extract_faces(
                img_path=img_array,
                detector_backend=self.detector_backend,
                enforce_detection=True,
                align=True,
                anti_spoofing=anti_spoofing
            )
        except ValueError as e:
            # DeepFace signals "face could not be detected" with ValueError
            logger.info(f"Face detection found nothing: {e}")
            raise NoFaceDetected()

    def detect(self, image_bytes: bytes, anti_spoofing: Optional[bool] = None) -> FaceDetection:
        """
        Detect faces and describe the most confident one.

        Raises:
            NoFaceDetected: If no face is present
        """
        if anti_spoofing is None:
            anti_spoofing = self.anti_spoofing

        faces = self._extract_faces(self.preprocess_image(image_bytes), anti_spoofing)
        if not faces:
            raise NoFaceDetected()

        primary = max(faces, key=lambda f: f.get("confidence") or 0.0)
        area = primary.get("facial_area") or {}

        box = {k: int(area[k]) for k in BOX_KEYS if k in area} or None
        landmarks = {
            name: [int(v) for v in point] if point is not None else None
            for name, point in area.items()
            if name not in BOX_KEYS
        }

        spoofing = None
        spoof_score = None
        if "is_real" in primary:
            spoofing = not bool(primary["is_real"])
            spoof_score = float(primary.get("antispoof_score", 0.0))

        return FaceDetection(
            box=box,
            landmarks=landmarks,
            confidence=float(primary.get("confidence") or 0.0),
            spoofing=spoofing,
            spoof_score=spoof_score,
            multiple_faces=len(faces) > 1,
            face_count=len(faces)
        )

    def embed(self, image_bytes: bytes) -> np.ndarray:
        """
        Complete pipeline: bytes -> embedding.

        Pipeline:
        1. Face detection
        2. Face extraction & alignment
        3. Embedding generation using ArcFace
        4. L2 normalization

        Raises:
            NoFaceDetected: If no face is present
            MultipleFacesDetected: If more than one face is present
        """
        img_array = self.preprocess_image(image_bytes)
        self._ensure_model_loaded()

        try:
            embeddings = DeepFace.represent(
                img_path=img_array,
                model_name=self.model_name,
                detector_backend=self.detector_backend,
                enforce_detection=True,
                align=True
            )
        except ValueError as e:
            logger.info(f"Embedding generation found no face: {e}")
            raise NoFaceDetected()

        if not embeddings:
            raise NoFaceDetected()
        if len(embeddings) > 1:
            raise MultipleFacesDetected(f"Expected one face, found {len(embeddings)}")

        embedding_array = np.array(embeddings[0]["embedding"], dtype=np.float32)

        # Normalize embedding for cosine similarity
        norm = np.linalg.norm(embedding_array)
        if norm > 0:
            embedding_array = embedding_array / norm

        return embedding_array

    def spoofing(self, image_bytes: bytes) -> FaceDetection:
        """
        Run anti-spoofing on the primary face regardless of configuration.
        """
        return self.detect(image_bytes, anti_spoofing=True)
