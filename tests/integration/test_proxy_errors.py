from unittest.mock import AsyncMock
import httpx
import pytest
from fastapi import FastAPI

from ingress.config import IngressConfigError, Settings


async def test_nonexistent_route_returns_404(gateway_client):
    """Test: paths hidden behind a service prefix return 404 instead of reaching the frontend."""
    resp = await gateway_client.get('/user-service/health')

    assert resp.status_code == 404
    assert resp.json()['detail'] == 'No upstream route found'


async def test_no_catch_all_returns_404(gateway_client):
    gateway_client._transport.app.state.table.delete('default/crypto-frontend-ingress')

    resp = await gateway_client.get('/assets/index.js')

    assert resp.status_code == 404


async def test_upstream_connection_failure_returns_502(gateway_client):
    """Test: upstream connection failures return 502 error (bad gateway) status code."""
    gateway_app = gateway_client._transport.app

    # Mock http_client to raise exception
    gateway_app.state.http_client.request = AsyncMock(
        side_effect=httpx.ConnectError("Connection refused")
    )

    resp = await gateway_client.get("/pricing-service/api/top-coins")  # valid route

    assert resp.status_code == 502
    assert 'Connection refused' in resp.json()['detail']


async def test_unresolvable_backend_returns_502(gateway_client):
    gateway_app = gateway_client._transport.app
    gateway_app.state.http_client.request = AsyncMock(
        side_effect=httpx.ConnectError("[Errno -2] Name or service not known")
    )

    resp = await gateway_client.get("/alert-service/api/alerts")

    assert resp.status_code == 502


async def test_upstream_timeout_returns_504(gateway_client):
    gateway_app = gateway_client._transport.app
    gateway_app.state.http_client.request = AsyncMock(
        side_effect=httpx.ReadTimeout("timed out")
    )

    resp = await gateway_client.get("/hello")

    assert resp.status_code == 504


async def test_malformed_config_refuses_to_start(tmp_path, monkeypatch):
    """Test: a bad rewrite target stops startup instead of serving traffic."""
    from ingress import main

    manifest = tmp_path / 'ingress.yaml'
    manifest.write_text(
        'apiVersion: networking.k8s.io/v1\nkind: Ingress\n'
        'metadata:\n  name: api\n  annotations:\n'
        '    nginx.ingress.kubernetes.io/rewrite-target: /api/$x\n'
        'spec:\n  rules:\n  - http:\n      paths:\n'
        '      - path: /svc/api(/|$)(.*)\n        pathType: ImplementationSpecific\n'
        '        backend:\n          service:\n            name: svc\n            port:\n              number: 80\n'
    )
    monkeypatch.setattr(main, 'settings', Settings(manifests=[str(manifest)]))
    app = FastAPI()

    with pytest.raises(IngressConfigError):
        async with main.lifespan(app):
            pass

    assert not hasattr(app.state, "http_client")
