from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Hub CRM API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./crm.db"
    redis_url: str = "redis://redis:6379/0"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    crm_access_role: str = "crm"
    crm_admin_role: str = "crm_admin"
    crm_manager_role: str = "crm_manager"
    clients_per_page: int = 20
    events_per_page: int = 20
    default_phone_country_code: str = "7"
    channel_outbound_email: str = "crm:emailer:sent"
    channel_replies: str = "crm:emailer:replies"
    channel_clients: str = "crm:clients"
    channel_tasks: str = "crm:tasks"
    channel_receive_timeout_seconds: int = 5
    email_send_task: str = "emailer.send_email"
    email_send_queue: str = "emailer"
    metrics_enabled: bool = False
    otel_enabled: bool = False
    # Recent audit entries and event envelopes kept in memory per process.
    audit_buffer_size: int = 1000
    event_buffer_size: int = 1000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
