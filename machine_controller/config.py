from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = Field(default="sqlite:///./machine_controller.db")
    log_level: str = Field(default="INFO")

    loop_interval_sec: int = Field(default=10, ge=1)

    proxmox_url: str = Field(default="https://localhost:8006")
    proxmox_token_id: str = Field(default="root@pam!machine-controller")
    proxmox_token_secret: str = Field(default="")
    proxmox_verify_tls: bool = Field(default=True)
    proxmox_timeout_sec: float = Field(default=10.0, gt=0)

    # Requeue is the only retry mechanism; keep remote calls single-shot.
    request_attempts: int = Field(default=1, ge=1)
    request_sleep_sec: int = Field(default=1, ge=0)

    iso_storage: str = Field(default="local")
    cloud_init_iso_device: str = Field(default="ide0")

    # Empty disables bearer auth on mutating endpoints.
    api_token: str = Field(default="")

    disable_background_loops: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
