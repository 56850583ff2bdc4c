from unittest.mock import AsyncMock, patch

import pytest
from starlette.requests import Request

from main import app
from routers.rate_limit import _client_identifier


def _request(client, headers=None):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/audit",
        "headers": [(key.encode(), value.encode()) for key, value in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_socket_host_wins_over_forwarded_header():
    request = _request(("10.0.0.7", 5000), {"x-forwarded-for": "1.2.3.4, 10.0.0.1"})
    assert _client_identifier(request) == "10.0.0.7"


def test_forwarded_header_used_without_socket_host():
    assert _client_identifier(_request(None, {"x-forwarded-for": "1.2.3.4, 10.0.0.1"})) == "1.2.3.4"
    assert _client_identifier(_request(None)) == "unknown"


@pytest.mark.asyncio
async def test_rotating_forwarded_header_does_not_reset_the_quota(audit_client, product):
    app.state.disable_rate_limits = False
    with patch("routers.rate_limit._count_in_redis", AsyncMock(side_effect=ConnectionError("redis down"))):
        statuses = []
        for index in range(31):
            response = await audit_client.post(
                "/audit",
                json={"productId": product.id},
                headers={"x-forwarded-for": f"203.0.113.{index}"},
            )
            statuses.append(response.status_code)

    assert statuses[:30] == [200] * 30
    assert statuses[30] == 429
    assert response.json()["error"] == "RATE_LIMITED"
