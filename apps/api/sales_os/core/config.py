from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Sales OS API"
    app_env: str = "local"
    app_debug: bool = True
    app_version: str = "0.1.0"
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./sales_os.db"
    row_store_backend: str = "sql"
    airtable_api_url: str = "https://api.airtable.com/v0"
    airtable_api_key: str = ""
    airtable_base_id: str = ""
    row_store_timeout_seconds: float = 10.0
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    lead_update_requires_owner: bool = True
    strict_stage_reads: bool = False
    rate_limit_disabled: bool = False
    rate_limit_mutations_per_minute: int = 60
    metrics_enabled: bool = False
    otel_enabled: bool = False
    otel_service_name: str = "sales-os-api"
    otel_exporter_otlp_endpoint: str = ""
    otel_console_exporter: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
