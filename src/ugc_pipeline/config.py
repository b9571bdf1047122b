import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.1.0"
    database_path: str = "data/videos.db"
    log_level: str = "INFO"

    kie_api_key: str = ""
    kie_api_base_url: str = "https://api.kie.ai"
    kie_timeout_sec: int = 60
    kie_download_timeout_sec: int = 300

    s3_endpoint_url: str = ""
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""
    s3_region: str = "auto"
    s3_bucket: str = "ugc-assets"
    s3_public_url: str = ""
    asset_folder: str = "ugc-videos"

    credits_per_video: int = 1
    submit_max_attempts: int = 3
    submit_backoff_base_sec: float = 2.0
    poll_interval_sec: float = 10.0
    poll_max_attempts: int = 120
    download_ttl_sec: int = 7 * 24 * 3600

    stale_after_sec: int = 120
    heartbeat_interval_sec: float = 30.0
    sweep_interval_sec: int = 60

    admin_api_token: str = ""


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
