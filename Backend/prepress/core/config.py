from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "Prepress Preflight API"
    DATABASE_URL: str = "" # Logic: If set, use Postgres. Else, use SQLite.
    DB_PATH: str = "prepress.db"
    REDIS_URL: str = "" # Empty disables job status publishing
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "60/minute"

    # ⚠ SECURITY WARNING: These defaults are for local development ONLY.
    # In production, you MUST override CORS_ORIGINS via environment variable to restrict access.
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000,http://localhost:8080"

    # ─── Jobs ────────────────────────────────────────────────────────────
    MAX_UPLOAD_SIZE_MB: int = 250
    JOB_TTL_HOURS: int = 12

    # ─── Toolchain ───────────────────────────────────────────────────────
    TOOL_TIMEOUT_MS: int = 180_000
    TOOL_VERSION_TIMEOUT_MS: int = 5_000
    TOOL_MAX_OUTPUT_BYTES: int = 50 * 1024 * 1024
    MIN_REQUIRED_DPI: int = 300
    PROOF_DPI: int = 150

    # ─── Worker ──────────────────────────────────────────────────────────
    POLL_INTERVAL_MS: int = 10_000
    WORKER_CONCURRENCY: int = 1
    CLEANUP_INTERVAL_MS: int = 30 * 60 * 1000
    CLEANUP_BATCH_SIZE: int = 100
    RUNNING_SWEEP_GRACE_MINUTES: int = 60
    EMBEDDED_WORKER: bool = False  # Run poller + sweeper inside the API process

    # ─── Storage ─────────────────────────────────────────────────────────
    STORAGE_TYPE: str = "local" # "local" or "s3"
    PREPRESS_TEMP_DIR: str = "tmp/prepress"
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "us-east-1"
    AWS_BUCKET_NAME: str = "prepress-jobs"

    class Config:
        env_file = ".env"

settings = Settings()
