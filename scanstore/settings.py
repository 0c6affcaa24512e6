"""Pydantic settings for the scan store.

Values come from the environment with the ``SCANSTORE_`` prefix; nested
groups use a double underscore, e.g. ``SCANSTORE_GRAPH__URI`` or
``SCANSTORE_POOL__MAX_CONNECTIONS``.
"""

from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL


class PoolSettings(BaseModel):
    """Connection pool sizing shared by both backends."""

    max_connections: int = Field(40, ge=1)
    idle_timeout: int = Field(
        60, ge=0, description="Seconds before an idle connection is recycled."
    )
    connection_timeout: int = Field(
        2, ge=0, description="Seconds to wait for a free connection."
    )
    max_uses: int = Field(
        10000,
        ge=1,
        description="Uses per connection; not every engine can enforce this.",
    )


class RelationalSettings(BaseModel):
    url: Optional[str] = Field(
        None, description="Full SQLAlchemy URL; overrides the individual fields."
    )
    host: str = "localhost"
    port: int = 5432
    user: Optional[str] = None
    password: Optional[str] = None
    database: str = "http_observatory"
    sslmode: Optional[str] = None

    def sqlalchemy_url(self) -> str | URL:
        if self.url:
            return self.url
        return URL.create(
            "postgresql",
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
            query={"sslmode": self.sslmode} if self.sslmode else {},
        )


class GraphSettings(BaseModel):
    uri: str = "neo4j://localhost:7687"
    username: str = "neo4j"
    password: str = ""
    database: str = "neo4j"


class StoreSettings(BaseSettings):
    """Settings for choosing and connecting a scan store backend."""

    model_config = SettingsConfigDict(
        env_prefix="SCANSTORE_", env_nested_delimiter="__"
    )

    backend: str = Field(
        "relational",
        description="relational (postgresql, postgres, sqlite) or graph (neo4j)",
    )
    relational: RelationalSettings = Field(default_factory=RelationalSettings)
    graph: GraphSettings = Field(default_factory=GraphSettings)
    pool: PoolSettings = Field(default_factory=PoolSettings)

    cooldown: int = Field(
        60, ge=0, description="Default window for select_scan_recent_scan."
    )
    cache_time_for_get: int = Field(
        86400,
        ge=0,
        description="Default max age for select_scan_latest_scan_by_host.",
    )
