"""Configuration schema using Pydantic."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ServerConfig(Base):
    """Chat server endpoints and the bearer credential."""

    api_url: str = "http://localhost:8080"
    ws_url: str = "ws://localhost:8080/ws"
    token: str = ""


class SyncConfig(Base):
    """Pagination and reconnection tuning."""

    page_size: int = Field(default=50, ge=1, le=100)
    reconnect_delay_ms: int = Field(default=500, ge=1)
    max_reconnect_delay_ms: int = Field(default=30_000, ge=1)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    connect_timeout_ms: int = Field(default=10_000, ge=1)
    request_timeout_s: float = Field(default=30.0, gt=0)


class Config(Base):
    """Root configuration for minicord."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
