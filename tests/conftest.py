# Centralized pytest configuration file (fixtures, hooks, plugins, etc.)
from pathlib import Path
import pytest
from asgi_lifespan import LifespanManager
import gzip
from fastapi import FastAPI, Request, Response
from httpx import AsyncClient, ASGITransport
from redis.asyncio import Redis

from ingress.config import crypto_tracker_routes
from ingress.rate_limit import RateLimiter
from ingress.routing import RoutingTable, build_table
from ingress.testing.fake_limiter import FakeRateLimiter
from ingress.main import application as gateway_app

DEPLOY_DIR = Path(__file__).resolve().parents[1] / 'deploy'
SERVICES = ('frontend', 'pricing-service', 'user-service', 'portfolio-service', 'alert-service')


@pytest.fixture
def deploy_dir() -> Path:
    return DEPLOY_DIR


#----Routing table for tests: every backend is the fake upstream----
@pytest.fixture
def routing_table() -> RoutingTable:
    return build_table(
        crypto_tracker_routes(),
        service_overrides={name: 'http://upstream' for name in SERVICES},
    )


@pytest.fixture
async def redis_client():
    """Real Redis client for integration testing"""
    redis = Redis.from_url('redis://localhost:6379', decode_responses=True)

    # Verify Redis is running
    try:
        await redis.ping()
    except Exception:
        await redis.aclose()
        pytest.skip('Redis not available')

    yield redis

    # Cleanup
    await redis.flushdb()
    await redis.aclose()


@pytest.fixture
async def rate_limiter(redis_client):
    """Real rate limiter for integration testing"""
    limiter = RateLimiter(redis_client)
    await limiter.load()

    yield limiter


@pytest.fixture
def upstream_app() -> FastAPI:
    app = FastAPI()     # mock upstream service for tests

    @app.get("/assets/bundle.js")
    async def bundle():  # compressed static asset
        return Response(content=gzip.compress(b"x" * 1000), media_type="application/javascript",
                        headers={"content-encoding": "gzip"})

    @app.post("/api/login")
    async def login():  # several cookies in one response
        response = Response(status_code=204)
        response.set_cookie("session", "abc")
        response.set_cookie("csrf", "xyz")
        return response

    @app.api_route("/{path:path}", methods=["GET", "POST", "DELETE"])
    async def echo(path: str, request: Request):  # reports what the backend received
        return {
            "message": "hello from upstream",
            "method": request.method,
            "path": "/" + path,
            "raw_path": request.scope["raw_path"].split(b"?", 1)[0].decode(),
            "query": request.url.query,
            "body": (await request.body()).decode(),
            "received_headers": dict(request.headers),
        }

    return app


@pytest.fixture
async def gateway_client(upstream_app: FastAPI, routing_table: RoutingTable):
    """Gateway test client with upstream mocked via ASGITransport"""
    # Transport to fake upstream
    upstream_transport = ASGITransport(app=upstream_app)
    upstream_client = AsyncClient(
        transport=upstream_transport,
        base_url="http://upstream"
    )
    # State set before startup is kept by the lifespan
    gateway_app.state.table = routing_table
    gateway_app.state.limiter = FakeRateLimiter()
    gateway_app.state.http_client = upstream_client

    async with LifespanManager(gateway_app):
        # client with transport to gateway app
        gateway_transport = ASGITransport(app=gateway_app)
        async with AsyncClient(
                transport=gateway_transport,
                base_url="http://gateway") as client:
            yield client

    await upstream_client.aclose()
