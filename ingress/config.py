from enum import Enum
from os import getenv
from pydantic import BaseModel, ConfigDict, Field


class IngressConfigError(ValueError):
    """Routing configuration that cannot be loaded. Raised at load time, never per request."""


class PathType(str, Enum):
    EXACT = 'Exact'
    PREFIX = 'Prefix'
    IMPLEMENTATION_SPECIFIC = 'ImplementationSpecific'     # regex, as ingress-nginx reads it


class RoutingRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str | None = None
    path: str
    path_type: PathType = PathType.PREFIX
    rewrite_target: str | None = None
    backend_service: str
    backend_port: int = Field(ge=1, le=65535)
    ingress: str = 'default/ingress'
    limit_rps: int | None = None
    limit_burst_multiplier: int = 5

    @property
    def is_regex(self) -> bool:
        return self.path_type is PathType.IMPLEMENTATION_SPECIFIC


class Settings(BaseModel):
    manifests: list[str] = Field(default_factory=list)
    namespace: str = 'default'
    service_domain: str = ''
    service_overrides: dict[str, str] = Field(default_factory=dict)
    redis_url: str = 'redis://localhost:6379'
    upstream_timeout: float = 20.0
    log_level: str = 'INFO'
    # used when no manifests are configured
    routes: list[RoutingRule] = Field(default_factory=list)

    @classmethod
    def from_env(cls) -> 'Settings':
        manifests = [m.strip() for m in getenv('INGRESS_MANIFESTS', '').split(',') if m.strip()]

        overrides = {}
        for pair in getenv('SERVICE_OVERRIDES', '').split(','):
            if '=' in pair:
                name, url = pair.split('=', 1)
                overrides[name.strip()] = url.strip()

        return cls(
            manifests=manifests,
            namespace=getenv('INGRESS_NAMESPACE', 'default'),
            service_domain=getenv('SERVICE_DOMAIN', ''),
            service_overrides=overrides,
            redis_url=getenv('REDIS_URL', 'redis://localhost:6379'),
            upstream_timeout=float(getenv('UPSTREAM_TIMEOUT', '20.0')),
            log_level=getenv('LOG_LEVEL', 'INFO'),
            routes=crypto_tracker_routes(),
        )


def crypto_tracker_routes() -> list[RoutingRule]:
    """Built-in routing table of the crypto-tracker deployment."""
    api = 'default/crypto-api-ingress'
    regex = PathType.IMPLEMENTATION_SPECIFIC
    return [
        RoutingRule(path='/', path_type=PathType.PREFIX,
                    backend_service='frontend', backend_port=80,
                    ingress='default/crypto-frontend-ingress'),
        RoutingRule(path='/pricing-service/api(/|$)(.*)', path_type=regex, rewrite_target='/api/$2',
                    backend_service='pricing-service', backend_port=12000, ingress=api),
        RoutingRule(path='/user-service/api(/|$)(.*)', path_type=regex, rewrite_target='/api/$2',
                    backend_service='user-service', backend_port=5000, ingress=api),
        RoutingRule(path='/portfolio-service/api(/|$)(.*)', path_type=regex, rewrite_target='/api/$2',
                    backend_service='portfolio-service', backend_port=5000, ingress=api),
        RoutingRule(path='/alert-service/api(/|$)(.*)', path_type=regex, rewrite_target='/api/$2',
                    backend_service='alert-service', backend_port=5000, ingress=api),
    ]


# default config, read from the environment
settings = Settings.from_env()
