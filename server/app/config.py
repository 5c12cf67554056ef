from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from the project root (one level above server/)
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Midjourney credentials (SALAI_TOKEN is the Discord user token)
    salai_token: str = ""
    server_id: str = ""
    channel_id: str = ""

    # Optional API keys
    hugging_face_token: str = ""

    # Gateway
    mj_gateway_url: str = "http://localhost:8080"
    mj_timeout_seconds: float = 20.0
    mj_poll_interval_seconds: float = 3.0
    mj_job_timeout_seconds: float = 600.0
    mj_remix: bool = True

    # Storage
    storage_path: str = "./storage"
    storage_max_entries: int = 100
    storage_max_age_hours: int = 24

    # App settings
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "production"
    log_level: str = "INFO"
    cors_origins: str = "*"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def storage_max_age_ms(self) -> int:
        return self.storage_max_age_hours * 60 * 60 * 1000

    @property
    def storage_file(self) -> Path:
        path = Path(self.storage_path)
        path.mkdir(parents=True, exist_ok=True)
        return path / "midjourney-data.json"


settings = Settings()
