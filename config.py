"""
Runtime configuration for the exam question pipeline.

Everything comes from the environment (a local .env is loaded first).
"""

import os
import logging

from dotenv import load_dotenv

load_dotenv()

# ── Database ───────────────────────────────────────────────────────────────────
POSTGRES_USER = os.getenv("POSTGRES_USER", "exam_user")
POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "exam_pass")
POSTGRES_HOST = os.getenv("POSTGRES_HOST", "localhost")
POSTGRES_PORT = os.getenv("POSTGRES_PORT", "5432")
POSTGRES_DB = os.getenv("POSTGRES_DB", "exam_pipeline")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg2://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}",
)

# ── Model ──────────────────────────────────────────────────────────────────────
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")

# Deadlines (seconds) for one external call
SOLVE_TIMEOUT_SECONDS = float(os.getenv("SOLVE_TIMEOUT_SECONDS", 60))
GENERATION_TIMEOUT_SECONDS = float(os.getenv("GENERATION_TIMEOUT_SECONDS", 120))

# Pause between consecutive page calls of one document
UNIT_DELAY_SECONDS = float(os.getenv("UNIT_DELAY_SECONDS", 0.5))

# ── Files ──────────────────────────────────────────────────────────────────────
STORAGE_DIR = os.getenv("STORAGE_DIR", "uploads")
MAX_UPLOAD_SIZE = int(os.getenv("MAX_UPLOAD_SIZE", 52428800))  # 50MB
RENDER_DPI = int(os.getenv("RENDER_DPI", 150))

# ── Logging ────────────────────────────────────────────────────────────────────
LOG_LEVEL = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
