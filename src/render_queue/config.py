import yaml
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# CLI flag name -> settings field
CLI_OVERRIDES = {
    "db": "database_url",
    "backend": "queue_backend",
    "max_parallel": "max_parallel",
    "poll_interval_ms": "poll_interval_ms",
    "renderer": "renderer",
    "temp_dir": "temp_render_dir",
    "shutdown_timeout_ms": "shutdown_timeout_ms",
    "worker_id": "worker_id",
    "log_level": "log_level",
}


class WorkerSettings(BaseSettings):
    """Worker configuration, read from the environment (names are case-insensitive)."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Store
    database_url: str = Field(
        default="sqlite:///./render_queue.db", description="Queue store URL (postgresql:// or sqlite://)"
    )
    queue_backend: Literal["durable", "memory"] = Field(
        default="durable", description="durable = shared SQL store, memory = in-process registry"
    )
    db_retry_attempts: int = Field(default=3, ge=1, description="Attempts per store operation")
    db_retry_delay_ms: int = Field(default=1000, ge=0, description="Linear backoff base delay")
    db_pool_max_size: int = Field(default=10, ge=1, description="Max pooled connections")
    db_pool_idle_timeout_ms: int = Field(default=30000, gt=0, description="Idle connection lifetime")
    db_acquire_timeout_ms: int = Field(default=5000, gt=0, description="Connection acquisition timeout")
    db_statement_timeout_ms: int = Field(
        default=15000, gt=0, description="Statement timeout (busy timeout on SQLite)"
    )

    # Worker pool
    max_parallel: int = Field(default=4, ge=1, description="Concurrent renders per process")
    poll_interval_ms: int = Field(default=1500, ge=0, description="Idle poll delay")
    busy_poll_interval_ms: int = Field(default=500, ge=0, description="Delay while at capacity")
    progress_update_interval_ms: int = Field(default=5000, ge=0, description="Progress write throttle")
    shutdown_timeout_ms: int = Field(default=30000, ge=0, description="Graceful drain deadline")
    worker_id: Optional[str] = Field(default=None, description="Claimant id (default: host-pid)")

    # Leases
    lease_duration_ms: int = Field(default=300000, gt=0, description="Claim lease length")
    max_claim_attempts: int = Field(default=3, ge=1, description="Claims before an expired job fails")
    reap_interval_ms: int = Field(default=60000, gt=0, description="Expired-lease sweep interval")

    # Billing
    credits_per_minute: int = Field(default=1, ge=0, description="Credits debited per started minute")

    # Rendering
    renderer: Literal["ffmpeg", "mock"] = Field(default="ffmpeg", description="Render adapter")
    temp_render_dir: str = Field(default="renders", description="Scratch dir for local artifacts")
    ffmpeg_timeout_s: int = Field(default=1800, gt=0, description="Global FFmpeg timeout")
    ffmpeg_kill_grace_period_s: int = Field(default=5, gt=0, description="SIGTERM -> SIGKILL grace")

    # Upload
    storage_backend: Literal["local", "s3"] = Field(default="local", description="Upload target")
    storage_dir: str = Field(default="renders/published", description="Local upload directory")
    public_base_url: Optional[str] = Field(default=None, description="Base URL for local uploads")
    s3_bucket: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    s3_region: str = "auto"
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    cdn_base_url: Optional[str] = None

    log_level: str = "INFO"

    @model_validator(mode="after")
    def s3_needs_bucket(self) -> "WorkerSettings":
        if self.storage_backend == "s3" and not self.s3_bucket:
            raise ValueError("S3_BUCKET is required when STORAGE_BACKEND=s3")
        return self

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def busy_poll_interval_s(self) -> float:
        return self.busy_poll_interval_ms / 1000

    @property
    def progress_update_interval_s(self) -> float:
        return self.progress_update_interval_ms / 1000

    @property
    def shutdown_timeout_s(self) -> float:
        return self.shutdown_timeout_ms / 1000

    @property
    def lease_duration_s(self) -> float:
        return self.lease_duration_ms / 1000

    @property
    def reap_interval_s(self) -> float:
        return self.reap_interval_ms / 1000


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(cli_args: Dict[str, Any] = None) -> WorkerSettings:
    """
    Resolve config: Defaults < default.yaml < local.yaml < environment < CLI
    Returns validated WorkerSettings.
    """
    cli_args = cli_args or {}

    # 1. YAML files
    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    # 2. Environment (only variables that are actually set)
    env_data = WorkerSettings().model_dump(exclude_unset=True)
    config_data = merge_dicts(config_data, env_data)

    # 3. CLI overrides
    for flag, field_name in CLI_OVERRIDES.items():
        if cli_args.get(flag) is not None:
            config_data[field_name] = cli_args[flag]

    # Init kwargs take precedence over the environment in pydantic-settings
    return WorkerSettings(**config_data)
