from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_prefix": "WFSCHED_"}

    # Run archive
    database_url: str = "sqlite+aiosqlite:///./wfsched.db"
    db_pool_size: int = 10
    archive_runs: bool = True
    max_retained_runs: int = 500  # terminal runs kept in memory

    # Workers
    worker_backend: str = "mock"  # "mock" or "local"
    local_max_processes: int = 32
    local_shell_cwd: str | None = None

    # Dispatch retry (worker unavailable)
    dispatch_max_attempts: int = 3
    dispatch_backoff_base: float = 1.0
    dispatch_backoff_max: float = 30.0

    # Concurrency groups: trigger events that cancel an in-progress run
    cancel_in_progress_events: list[str] = ["pull_request"]

    # API
    api_prefix: str = "/api/v1"

    # Logging
    log_level: str = "INFO"
    debug: bool = False
