from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FakeUpstreamSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FAKE_UPSTREAM_", extra="ignore")

    advertise_url: str = Field(default="http://localhost:9000")
    public_ip: str = Field(default="127.0.0.1")
    browser_version: str = Field(default="120.0.0.0")
    fail_provisioning: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> FakeUpstreamSettings:
    return FakeUpstreamSettings()
