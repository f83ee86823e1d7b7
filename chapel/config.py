from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    app_name: str = 'Chapel Attendance'
    app_env: str = 'local'
    app_timezone: str = 'Africa/Lagos'
    database_url: str = 'sqlite:///./chapel.db'
    storage_backend: str = 'memory'
    storage_bucket: str = 'attendance-scans'
    storage_root: str = './storage'
    supabase_url: str = ''
    supabase_service_key: str = ''
    storage_timeout_seconds: float = 30.0
    attendance_levels: list[str] = ['100', '200', '300', '400', '500']
    clearance_max_attempts: int = 3
    clearance_backoff_ms: int = 100
    lock_stale_seconds: int = 60
    default_page_size: int = 20
    cache_backend: str = 'memory'
    cache_redis_url: str | None = None
    default_cache_ttl: int = 60
    db_slow_query_ms: int = 100
    metrics_slow_ms: int = 200
    enable_reconcile_job: bool = False
    reconcile_interval_minutes: int = 10
    reconcile_batch_size: int = 50


settings = Settings()
