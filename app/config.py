from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql://postgres:postgres@db:5432/fitness"
    redis_url: str = "redis://redis:6379/0"

    # "redis" in deployments, "stub" for unit tests and local scripts
    dramatiq_broker: str = "redis"

    log_level: str = "INFO"

    # Session analytics stream (Redis lists)
    session_stream_queue: str = "training-sessions-stream"
    session_dlq_queue: str = "training-sessions-dlq"
    stream_max_consumer_retries: int = 3
    stream_batch_size: int = 100
    dlq_max_messages_per_run: int = 100
    inflight_visibility_timeout_seconds: int = 900  # must outlast the stream actors' time_limit

    # Data lifecycle constants
    deletion_grace_period_days: int = 30
    recovery_window_hours: int = 1  # recover deadline = scheduled_at - 1h
    download_url_expiry_hours: int = 48
    export_rate_limit_hours: int = 24
    export_estimated_minutes: int = 5
    recovery_code_max_attempts: int = 5
    bcrypt_rounds: int = 12
    stuck_deletion_minutes: int = 60  # processing longer than this is resumed by the sweep

    # Background job retry policy (Dramatiq message options)
    job_max_attempts: int = 3
    job_min_backoff_ms: int = 60_000  # 1 minute
    job_max_backoff_ms: int = 600_000  # 10 minutes
    job_time_limit_ms: int = 540_000  # 9 minutes per attempt

    # Object storage for export artifacts
    export_storage_dir: str = "exports"
    public_base_url: str = "http://localhost:8000"

    # Signing / hashing secrets
    export_url_secret: str = "change-me-export-url-secret"
    certificate_signing_secret: str = "change-me-certificate-secret"
    anonymization_salt: str = "fitness-app-salt"
    audit_salt: str = "audit_default_salt"

    # Auth settings
    session_cookie_name: str = "fitness_session"
    session_max_age: int = 86400 * 7  # 7 days
    session_cookie_secure: bool = False  # True in production

    # Periodic jobs (cron expressions, UTC)
    daily_aggregation_cron: str = "0 2 * * *"
    weekly_aggregation_cron: str = "0 3 * * mon"  # day names; APScheduler numbers weekdays from Monday=0
    dlq_sweep_cron: str = "0 5 * * *"
    due_deletion_sweep_cron: str = "15 * * * *"
    export_cleanup_cron: str = "30 4 * * *"
    stream_consume_interval_seconds: int = 60

    class Config:
        env_file = ".env"


settings = Settings()
