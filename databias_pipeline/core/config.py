"""Configuration for the analysis pipeline.

Centralizes environment variables for storage, the job queue, the worker and
analyzer thresholds.
"""
import os

from dotenv import load_dotenv

_ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
_ENV_PATH = os.path.join(_ROOT_DIR, ".env")
if os.path.exists(_ENV_PATH):
    load_dotenv(_ENV_PATH)
else:
    load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes", "y")


class Settings:
    """Simple settings container using environment variables.

    - DATABASE_URL: SQLAlchemy URL holding analysis records and the durable queue
    - OBJECT_STORE_ROOT: directory backing the local object store
    - RESULTS_BUCKET: bucket that receives result artifacts
    - DATASETS_BUCKET: bucket that receives uploaded datasets
    - MAX_UPLOAD_BYTES: largest accepted dataset upload
    """

    DATABASE_URL: str = os.environ.get("DATABASE_URL", "sqlite:///databias_pipeline.db")
    OBJECT_STORE_ROOT: str = os.environ.get("OBJECT_STORE_ROOT", "./object-store")
    RESULTS_BUCKET: str = os.environ.get("RESULTS_BUCKET", "analysis-results")
    DATASETS_BUCKET: str = os.environ.get("DATASETS_BUCKET", "datasets")
    MAX_UPLOAD_BYTES: int = int(os.environ.get("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)))

    # --- Job queue ---
    QUEUE_NAME: str = os.environ.get("QUEUE_NAME", "analysis-jobs")
    QUEUE_BACKEND: str = os.environ.get("QUEUE_BACKEND", "sql").lower()
    JOB_ATTEMPTS: int = int(os.environ.get("JOB_ATTEMPTS", "3"))
    JOB_BACKOFF_DELAY_SEC: float = float(os.environ.get("JOB_BACKOFF_DELAY_SEC", "5.0"))
    JOB_LOCK_DURATION_SEC: float = float(os.environ.get("JOB_LOCK_DURATION_SEC", "300"))

    # --- Worker ---
    WORKER_CONCURRENCY: int = int(os.environ.get("WORKER_CONCURRENCY", "1"))
    WORKER_POLL_INTERVAL_SEC: float = float(os.environ.get("WORKER_POLL_INTERVAL_SEC", "1.0"))
    WORKER_SHUTDOWN_TIMEOUT_SEC: float = float(os.environ.get("WORKER_SHUTDOWN_TIMEOUT_SEC", "30"))
    WORKER_HEARTBEAT_INTERVAL_SEC: float = float(os.environ.get("WORKER_HEARTBEAT_INTERVAL_SEC", "30"))
    EMBEDDED_WORKER: bool = _flag("EMBEDDED_WORKER", "false")

    # --- Statistics thresholds (defaults follow common fairness heuristics) ---
    HIGH_MISSING_RATIO: float = float(os.environ.get("HIGH_MISSING_RATIO", "0.10"))
    SKEW_RATIO: float = float(os.environ.get("SKEW_RATIO", "2.0"))
    DIR_MIN_RATIO: float = float(os.environ.get("DIR_MIN_RATIO", "0.8"))
    CLASS_IMBALANCE_RATIO: float = float(os.environ.get("CLASS_IMBALANCE_RATIO", "10"))
    CLASS_IMBALANCE_MAX_CLASSES: int = int(os.environ.get("CLASS_IMBALANCE_MAX_CLASSES", "5"))

    # Toggle to include general process tips in recommended actions
    ALWAYS_ON_TIPS: bool = _flag("ALWAYS_ON_TIPS", "true")
    # Pick an outcome column by name when the request does not designate one
    AUTO_DETECT_OUTCOME: bool = _flag("AUTO_DETECT_OUTCOME", "true")

    # --- PII detection ---
    PII_CONTEXT_CHARS: int = int(os.environ.get("PII_CONTEXT_CHARS", "30"))

    # --- Logging ---
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.environ.get("LOG_FORMAT", "json").strip().lower()

settings = Settings()
