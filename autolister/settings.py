from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///./autolister.db"

    # Listing generation provider
    generation_endpoint_url: str = "http://localhost:54321/functions/v1/generate-listing"
    generation_api_key: str = ""
    generation_max_attempts: int = 2  # 일시적 오류 재시도 포함 총 시도 횟수
    generation_retry_delay: float = 1.0  # 재시도 간 고정 대기 (초)
    generation_max_image_urls: int = 9

    # Bulk generation
    generation_batch_size_options: list[int] = [5, 10, 20]
    generation_batch_size: int = 20
    generation_concurrency_width: int = 3  # 청크당 동시 호출 수
    generation_chunk_delay: float = 0.5  # 청크 간 대기 시간

    undo_ttl_seconds: float = 300.0  # 5분

    # Autopilot
    autopilot_batch_size: int = 30
    autopilot_poll_interval: float = 3.0
    autopilot_worker_url: str = "http://localhost:54321/functions/v1/process-autopilot-batch"

    sku_review_marker: str = "[SKU_NEEDS_REVIEW]"

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if v and not v.startswith(("postgresql", "sqlite")):
            raise ValueError("DB URL must start with 'postgresql' or 'sqlite'.")
        return v

    @field_validator("generation_endpoint_url", "autopilot_worker_url")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with 'http://' or 'https://'.")
        return v

    @field_validator("generation_retry_delay", "generation_chunk_delay", "autopilot_poll_interval", "undo_ttl_seconds")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Delay must be zero or greater.")
        return v

    @field_validator("generation_max_attempts", "generation_concurrency_width", "generation_max_image_urls", "autopilot_batch_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Value must be at least 1.")
        return v

    @field_validator("generation_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int, info) -> int:
        options = info.data.get("generation_batch_size_options") or [5, 10, 20]
        if v not in options:
            raise ValueError(f"generation_batch_size must be one of {options}.")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
