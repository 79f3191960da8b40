from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "extra": "ignore",
        "env_prefix": "TASKWEAVE_",
        "env_file": (
            str(Path.home() / ".local" / "share" / "taskweave" / ".env"),
            ".env",
        ),
        "env_file_encoding": "utf-8",
    }

    data: Path = Path.home() / ".local" / "share" / "taskweave"
    model: str = "claude-opus-4-6"
    owner: str = "local"
    log_level: str = "INFO"

    # Queue worker
    worker_concurrency: int = 5
    worker_rate_max: int = 10
    worker_rate_duration_ms: int = 1000
    poll_interval: float = 1.0
    queue_max_attempts: int = 3
    queue_backoff_ms: int = 2000
    queue_lease_seconds: int = 1800

    # Stepwise tasks
    max_step_retries: int = 3
    max_strategy_steps: int = 50
    checkpoint_interval: int = 5
    context_char_limit: int = 100_000
    trace_query_limit: int = 50
    step_delay_ms: int = 1000
    step_retry_backoff_ms: int = 1000

    # External capability calls (seconds)
    execution_timeout: float = 300
    invocation_budget: float = 300

    # Autonomous sessions
    autonomous_default_max_iterations: int = 20
    autonomous_max_iterations_cap: int = 100

    # Rate limiter
    rate_limit_default: int = 60
    rate_limit_window_ms: int = 60_000
    rate_limit_cleanup_interval: float = 60

    @property
    def db_path(self) -> Path:
        return self.data / "taskweave.db"


settings = Settings()
