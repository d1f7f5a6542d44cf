"""
FaceGate

Face embedding matching and credential-gated access service using:
- DeepFace with ArcFace model for face embeddings
- Cosine similarity verification and top-K search (linear scan or FAISS)
- Continuous live-scan verification loops
- bcrypt-hashed, revocable API credentials
- FastAPI for RESTful API
"""

__version__ = "1.0.0"
