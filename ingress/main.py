import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response, HTTPException
import httpx
from redis.asyncio import Redis
from .config import settings
from .manifest import load_table
from .rate_limit import RateLimiter
from .routing import RouteMatch

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = {
    b'connection',
    b'keep-alive',
    b'proxy-authenticate',
    b'proxy-authorization',
    b'te',
    b'trailers',
    b'transfer-encoding',
    b'upgrade',
    b'host',
}
# httpx hands back a decoded body; Starlette recomputes content-length
STRIPPED_RESPONSE_HEADERS = {b"content-encoding", b"content-length", b"transfer-encoding", b"connection"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown logic."""
    #---- Startup ----
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    if not hasattr(app.state, 'table'):
        # IngressConfigError propagates: a bad routing config must not serve traffic
        app.state.table = load_table(settings)
    logger.info('Serving %d routing rules', len(app.state.table.rules))

    if not hasattr(app.state, 'limiter') and app.state.table.rate_limited:
        redis = Redis.from_url(settings.redis_url)
        logger.info('Redis ping successful: %s', await redis.ping())

        limiter = RateLimiter(redis)
        await limiter.load()

        app.state.redis = redis
        app.state.limiter = limiter

    if not hasattr(app.state, 'http_client'):
        app.state.http_client = httpx.AsyncClient(timeout=settings.upstream_timeout)

    try:
        yield
    finally:
        #---- Shutdown ----
        if hasattr(app.state, 'http_client'):
            await app.state.http_client.aclose()
        if hasattr(app.state, 'redis'):
            await app.state.redis.aclose()

application = FastAPI(lifespan=lifespan)


def request_path(request: Request) -> str:
    """Request path exactly as the client sent it, percent-escapes included."""
    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    return raw.split(b"?", 1)[0].decode("latin-1")


def forwarded_headers(request: Request, path: str, match: RouteMatch) -> list[tuple[bytes, bytes]]:
    """End-to-end client headers plus the X-Forwarded-* set ingress-nginx sends."""
    headers = [
        (k, v) for k, v in request.headers.raw if k.lower() not in HOP_BY_HOP_HEADERS
    ]
    client = request.client.host if request.client else ''
    prior = request.headers.get('x-forwarded-for')
    forwarded_for = f'{prior}, {client}' if prior else client

    original_uri = path + (f'?{request.url.query}' if request.url.query else '')
    extra = {
        b'x-forwarded-host': request.headers.get('host', ''),
        b'x-forwarded-for': forwarded_for,
        b'x-forwarded-proto': request.url.scheme,
        b'x-original-uri': original_uri,
    }
    if match.stripped_prefix:
        extra[b'x-forwarded-prefix'] = match.stripped_prefix
    headers = [(k, v) for k, v in headers if k.lower() not in extra]
    headers.extend((k, v.encode('latin-1')) for k, v in extra.items())
    return headers


@application.api_route(
    path="/{path:path}",
    methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"],
)
async def proxy(path: str, request: Request):
    path = request_path(request)
    match = request.app.state.table.match(path, request.headers.get('host'))
    if match is None:
        logger.warning('No route for %s %s', request.method, path)
        raise HTTPException(status_code=404, detail="No upstream route found")

    rule = match.rule
    # httpx.URL keeps escapes such as %2F and %3F inside the path
    url = httpx.URL(match.upstream.rstrip("/") + match.forwarded_path)

    # ---- Rate Limiting ----
    limit_headers = []
    if rule.limit_rps:
        client = request.headers.get("x-api-key") or (request.client.host if request.client else 'unknown')
        allowed, remaining = await request.app.state.limiter.allow_rule(client, rule)
        if not allowed:
            logger.warning('Rate limit exceeded for %s on %s', client, rule.ingress)
            raise HTTPException(status_code=429, detail="Rate limit exceeded")
        limit_headers.append((b'x-ratelimit-remaining', str(int(remaining)).encode()))

    headers = forwarded_headers(request, path, match)
    body = await request.body()

    # ---- Proxy Request ----
    try:
        resp = await request.app.state.http_client.request(
            request.method,
            url,
            headers=headers,
            content=body,
            params=request.query_params
        )
    except httpx.TimeoutException as exc:
        logger.warning('Upstream %s timed out: %s', url, exc)
        raise HTTPException(status_code=504, detail=f"Upstream timed out: {exc}")
    except httpx.RequestError as exc:
        # DNS failure for an unknown service lands here too
        logger.warning('Upstream %s unreachable: %s', url, exc)
        raise HTTPException(status_code=502, detail=str(exc) or "Upstream unreachable")

    response = Response(content=resp.content, status_code=resp.status_code)
    # raw list keeps repeated headers such as set-cookie apart
    response.raw_headers.extend(
        (k.lower(), v) for k, v in resp.headers.raw
        if k.lower() not in STRIPPED_RESPONSE_HEADERS
    )
    response.raw_headers.extend(limit_headers)
    return response
