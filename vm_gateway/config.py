from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    service_name: str = Field(default="Chrome VM Hosting Gateway")
    service_version: str = Field(default="2.0.0")
    public_base_url: str = Field(default="http://localhost:8000")

    store_backend: str = Field(default="memory")
    database_url: str = Field(default="sqlite:///./vm_gateway.db")

    edge_latency_sec: float = Field(default=2.0, ge=0.0, le=30.0)
    cloud_latency_sec: float = Field(default=2.0, ge=0.0, le=30.0)
    upstream_timeout_sec: float = Field(default=10.0, gt=0.0)

    provisioner_url: str | None = Field(default=None)
    container_image: str = Field(default="browserless/chrome:latest")
    google_cloud_project_id: str | None = Field(default=None)
    google_cloud_access_token: str | None = Field(default=None)
    google_cloud_zone: str = Field(default="us-central1-a")

    chrome_version: str = Field(default="120.0.0.0")
    runtime_version: str = Field(default="18.19.0")

    log_level: str = Field(default="INFO")

    @property
    def cloud_credentials_configured(self) -> bool:
        return bool(self.google_cloud_project_id and self.google_cloud_access_token)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
