# app/config.py
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # "production" restricts plain-http MCP endpoints to localhost
    ENVIRONMENT: str = "development"

    # Proxy tool sources: local CSV path or https:// URL (empty = no proxy tools)
    PROXY_TOOLS_CSV: str | None = None
    PROXY_DISCOVERY_TIMEOUT_SEC: float = 10.0

    # Outbound safety
    ALLOW_INTERNAL_ADDRESS_HOSTS: str = ""          # "host, *.domain" allowed to resolve internally
    DNS_DOUBLE_LOOKUP: bool = True
    SENSITIVE_HEADERS: str = ""                     # added to the always-stripped auth headers on cross-origin redirects
    DEFAULT_TIMEOUT_SEC: float = 12.5

    # Upstream calls
    HUB_TOKEN: str | None = None                    # forwarded to upstream endpoints when set
    UPSTREAM_CALL_TIMEOUT_SEC: float = 60.0         # idle budget per upstream call; progress events extend it
    REPLICA_REWRITE_ENABLED: bool = True
    UPSTREAM_TOOLS_ENABLED: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
