from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    data_dir: str = "data"
    database_url: Optional[str] = None
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    # Remote session service
    short_code_bytes: int = 3  # 6 hex characters
    short_code_attempts: int = 5

    # Scanner client
    server_url: str = "http://localhost:8000"
    http_timeout: float = 30.0
    local_state_dir: Optional[str] = None
    session_ttl_hours: int = 24

    class Config:
        env_prefix = "SCANSHARE_"
        env_file = ".env"
        env_file_encoding = "utf-8"

    def get_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir}/scanshare.db"

    def get_local_state_dir(self) -> Path:
        return Path(self.local_state_dir or Path(self.data_dir) / "local")


@lru_cache
def get_settings() -> Settings:
    return Settings()
