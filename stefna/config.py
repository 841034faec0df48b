"""
Worker configuration.

Values come from the environment (a local `.env` is loaded first).  The
`Settings` object is built once in the app lifespan and handed to every
component that needs it.
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    return int(raw) if raw.strip() else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    return float(raw) if raw.strip() else default


@dataclass
class SupabaseConfig:
    url: str = field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    service_role_key: str = field(default_factory=lambda: os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""))
    jobs_table: str = field(default_factory=lambda: os.getenv("JOBS_TABLE", "generation_jobs"))


@dataclass
class StorageConfig:
    r2_account_id: str = field(default_factory=lambda: os.getenv("R2_ACCOUNT_ID", ""))
    r2_access_key_id: str = field(default_factory=lambda: os.getenv("R2_ACCESS_KEY_ID", ""))
    r2_secret_access_key: str = field(default_factory=lambda: os.getenv("R2_SECRET_ACCESS_KEY", ""))
    r2_bucket: str = field(default_factory=lambda: os.getenv("R2_BUCKET_NAME", "assets"))
    r2_public_url: str = field(default_factory=lambda: os.getenv("R2_PUBLIC_URL", ""))


@dataclass
class ProviderConfig:
    aiml_api_key: str = field(default_factory=lambda: os.getenv("AIML_API_KEY", ""))
    aiml_api_base: str = field(default_factory=lambda: os.getenv("AIML_API_BASE", "https://api.aimlapi.com/v1"))
    fal_api_key: str = field(default_factory=lambda: os.getenv("FAL_API_KEY", ""))
    fal_queue_base: str = field(default_factory=lambda: os.getenv("FAL_QUEUE_BASE", "https://queue.fal.run"))
    replicate_api_key: str = field(default_factory=lambda: os.getenv("REPLICATE_API_KEY", ""))
    replicate_api_base: str = field(default_factory=lambda: os.getenv("REPLICATE_API_BASE", "https://api.replicate.com/v1"))
    max_retries: int = field(default_factory=lambda: _env_int("PROVIDER_MAX_RETRIES", 3))
    request_timeout: float = field(default_factory=lambda: _env_float("PROVIDER_REQUEST_TIMEOUT", 60.0))


@dataclass
class CreditPolicy:
    starter_grant: int = field(default_factory=lambda: _env_int("CREDITS_STARTER_GRANT", 30))
    generation_cost: int = field(default_factory=lambda: _env_int("CREDITS_GENERATION_COST", 2))
    daily_cap: int = field(default_factory=lambda: _env_int("CREDITS_DAILY_CAP", 30))


@dataclass
class PollingPolicy:
    interval_seconds: float = field(default_factory=lambda: _env_float("POLL_INTERVAL_SECONDS", 3.0))
    image_ceiling_seconds: float = field(default_factory=lambda: _env_float("POLL_CEILING_IMAGE", 90.0))
    shot_ceiling_seconds: float = field(default_factory=lambda: _env_float("POLL_CEILING_SHOT", 90.0))
    video_ceiling_seconds: float = field(default_factory=lambda: _env_float("POLL_CEILING_VIDEO", 420.0))
    stale_after_seconds: float = field(default_factory=lambda: _env_float("STALE_JOB_SECONDS", 600.0))


@dataclass
class Settings:
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))
    backend: str = field(default_factory=lambda: os.getenv("JOB_STORE_BACKEND", "memory"))
    worker_secret: str = field(default_factory=lambda: os.getenv("WORKER_SHARED_SECRET", ""))
    auth_max_skew_seconds: int = field(default_factory=lambda: _env_int("AUTH_MAX_SKEW_SECONDS", 300))
    max_concurrent_jobs: int = field(default_factory=lambda: _env_int("MAX_CONCURRENT_JOBS", 4))
    work_dir: str = field(default_factory=lambda: os.getenv("WORK_DIR", ""))
    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    credits: CreditPolicy = field(default_factory=CreditPolicy)
    polling: PollingPolicy = field(default_factory=PollingPolicy)

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        return cls()
