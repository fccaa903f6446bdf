"""
Shared settings, read from the environment (.env in development).
"""

import os

from dotenv import load_dotenv

load_dotenv()

# =========================
# DATABASE
# =========================

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "krishibarosa_db")

# =========================
# IMAGE STORE (IPFS)
# =========================

IPFS_UPLOAD_URL = os.getenv("IPFS_UPLOAD_URL")
# Set in .env: IPFS_GATEWAY_PUBLIC="https://ipfs.io/ipfs/" (or Pinata)
IPFS_GATEWAY_PUBLIC = os.getenv("IPFS_GATEWAY_PUBLIC", "https://ipfs.io/ipfs/")
UPLOAD_TIMEOUT_SECONDS = float(os.getenv("UPLOAD_TIMEOUT_SECONDS", "30"))
UPLOAD_RETRIES = int(os.getenv("UPLOAD_RETRIES", "2"))

MAX_IMAGE_BYTES = 10 * 1024 * 1024  # 10 MB
MIN_IMAGE_BYTES = 10 * 1024  # 10 KB

# =========================
# AI VALIDATION SERVICE
# =========================

AI_SERVICE_URL = os.getenv("AI_SERVICE_URL", "http://localhost:8500/score")
AI_SERVICE_TOKEN = os.getenv("AI_SERVICE_TOKEN", "")
AI_MODEL_NAME = os.getenv("AI_MODEL_NAME", "umm-maybe/AI-image-detector")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "20"))

# Triage thresholds. deepfake score: higher = more likely synthetic.
DEEPFAKE_APPROVE_BELOW = float(os.getenv("DEEPFAKE_APPROVE_BELOW", "0.30"))
DEEPFAKE_REJECT_ABOVE = float(os.getenv("DEEPFAKE_REJECT_ABOVE", "0.85"))
QUALITY_FLOOR = float(os.getenv("QUALITY_FLOOR", "0.60"))
DEEPFAKE_DETECTED_ABOVE = 0.7

# Max parallel uploads / scoring calls per stage submission
SUBMISSION_CONCURRENCY = int(os.getenv("SUBMISSION_CONCURRENCY", "4"))

# =========================
# CERTIFICATE ISSUER (blockchain bridge)
# =========================

FABRIC_BRIDGE_URL = os.getenv("FABRIC_BRIDGE_URL", "http://localhost:3000")
ISSUER_TIMEOUT_SECONDS = float(os.getenv("ISSUER_TIMEOUT_SECONDS", "15"))
CERTIFICATE_CLAIM_TTL_SECONDS = int(os.getenv("CERTIFICATE_CLAIM_TTL_SECONDS", "120"))
PUBLIC_VERIFY_URL = os.getenv("PUBLIC_VERIFY_URL", "https://krishibarosa.com/verify/")

# =========================
# AUTH
# =========================

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "1440"))
ADMIN_ID = os.getenv("ADMIN_ID", "ADMIN")

SYSTEM_ACTOR_ID = "system:triage"

# =========================
# SERVER
# =========================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
