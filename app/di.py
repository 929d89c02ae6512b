# app/di.py
from dataclasses import dataclass
from typing import List, Optional

from app.config import Settings
from app.services.address_policy import AddressGuard
from app.services.httpclient import SafeHttpService
from app.services.metrics import UpstreamCallMetrics
from app.services.proxy_config import load_proxy_sources
from app.services.proxy_registry import ProxyToolRegistry
from app.services.upstream_bridge import UpstreamCallBridge
from app.services.upstream_schema import UpstreamSchemaService
from app.services.upstream_session import UpstreamSessionFactory
from app.services.validator import JsonValidatorService


@dataclass
class Container:
    settings: Settings
    address_guard: AddressGuard
    http_service: SafeHttpService
    validator_service: JsonValidatorService
    metrics: UpstreamCallMetrics
    session_factory: UpstreamSessionFactory
    proxy_registry: ProxyToolRegistry
    upstream_bridge: UpstreamCallBridge
    schema_service: UpstreamSchemaService

    async def aclose(self) -> None:
        await self.http_service.aclose()


def _split_csv(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def build_container(settings: Optional[Settings] = None) -> Container:
    s = settings or Settings()

    guard = AddressGuard(
        allow_patterns=_split_csv(s.ALLOW_INTERNAL_ADDRESS_HOSTS),
        double_lookup=s.DNS_DOUBLE_LOOKUP,
    )
    http = SafeHttpService(guard, sensitive_headers=_split_csv(s.SENSITIVE_HEADERS))

    validator = JsonValidatorService()
    metrics = UpstreamCallMetrics()
    sessions = UpstreamSessionFactory(http)

    async def sources_loader():
        return await load_proxy_sources(s.PROXY_TOOLS_CSV, http, s.DEFAULT_TIMEOUT_SEC)

    registry = ProxyToolRegistry(
        sources_loader,
        sessions,
        validator,
        discovery_timeout=s.PROXY_DISCOVERY_TIMEOUT_SEC,
        headers={"X-HF-Authorization": f"Bearer {s.HUB_TOKEN}"} if s.HUB_TOKEN else None,
    )

    bridge = UpstreamCallBridge(
        sessions,
        metrics,
        token=s.HUB_TOKEN,
        enforce_local_http=s.ENVIRONMENT.lower() == "production",
        replica_rewrite=s.REPLICA_REWRITE_ENABLED,
        call_timeout=s.UPSTREAM_CALL_TIMEOUT_SEC,
    )

    schema = UpstreamSchemaService(http, metrics, token=s.HUB_TOKEN)

    return Container(s, guard, http, validator, metrics, sessions, registry, bridge, schema)
