from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

from constants import DEFAULT_AREA_FIELD, DEFAULT_VERSION_FIELD


class Settings(BaseSettings):
    database_url: str = ""
    db_pool_max: int = 10
    auto_create_schema: bool = False

    github_token: str = ""
    github_api_base_url: str = "https://api.github.com"

    issue_sync_page_size: int = 100
    # None or non-positive means no page cap; pagination stops on a short page
    issue_sync_max_pages: int | None = None

    azure_openai_endpoint: str = ""
    azure_openai_api_key: str = ""
    azure_openai_api_version: str = ""
    issue_embedding_model_id: str = ""

    issue_version_field: str = DEFAULT_VERSION_FIELD
    issue_area_field: str = DEFAULT_AREA_FIELD

    issue_auto_sync_repos: str = ""
    issue_sync_sleep_minutes: int = 5
    # A sync flag untouched for this long is treated as abandoned by a dead run
    issue_sync_lease_minutes: int = 30

    recluster_default_threshold: float = 0.82
    recluster_default_top_k: int = 5

    host: str = "0.0.0.0"
    port: int = 8000

    environment: str = "development"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def max_pages(self) -> int | None:
        if self.issue_sync_max_pages is None or self.issue_sync_max_pages <= 0:
            return None
        return self.issue_sync_max_pages

    @property
    def auto_sync_repos(self) -> list[str]:
        return [r.strip() for r in self.issue_auto_sync_repos.split(",") if r.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
