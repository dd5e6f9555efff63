"""Runtime configuration helpers.

Classes:
    Settings: Pydantic settings model capturing environment-driven defaults.

Functions:
    get_settings(): Return a cached Settings instance for dependency injection.
"""

from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Opinion Map API"
    database_url: str = "sqlite+aiosqlite:///./data/opinion_map.db"
    log_level: str = "INFO"

    openai_api_key: SecretStr | None = None
    openai_timeout_seconds: float = 60.0
    openai_embedding_model: str = "text-embedding-3-small"
    openai_embedding_fallback_model: str | None = None
    openai_labeling_model: str = "gpt-4.1-mini"
    labeling_temperature: float = 0.5
    labeling_max_tokens: int = 500
    labeling_max_posts: int = 30
    labeling_concurrency: int = 4
    default_label_language: str = "en"

    embedding_batch_size: int = 100
    embedding_concurrency: int = 2
    embedding_max_tokens: int = 2000
    min_vectorized_ratio: float = 0.5

    sampler_min_posts: int = 10
    sampler_max_sample_size: int = 10000
    sampler_prioritize_engagement: bool = True
    sampler_seed: int = 42

    pca_components: int = 20
    umap_n_neighbors: int = 15
    umap_min_dist: float = 0.1
    umap_metric: str = "euclidean"
    umap_seed: int = 42

    cluster_min_k: int = 3
    cluster_max_k: int = 15
    cluster_min_size: int = 3
    cluster_outlier_zscore: float = 2.5
    cluster_seed: int = 42

    session_stale_after_seconds: int = 900

    scheduler_backend: str = "local"
    qstash_url: str = "https://qstash.upstash.io"
    qstash_token: SecretStr | None = None
    qstash_current_signing_key: SecretStr | None = None
    qstash_next_signing_key: SecretStr | None = None
    qstash_retries: int = 3
    worker_url: str = "http://localhost:8000/webhooks/opinion-map-worker"
    worker_api_key: SecretStr | None = None

    allowed_zone_ids: list[str] = Field(default_factory=list)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
