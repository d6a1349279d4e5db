"""Tests for the scheduler trigger endpoints."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import pytest

from cow_flywheel import __version__
from cow_flywheel.api import create_app
from cow_flywheel.config import CronSettings, DatabaseSettings, Settings
from cow_flywheel.jobs import UnknownJobError

SECRET = "s3cret-trigger"


class RecordingRunner:
    """Stands in for run_job."""

    def __init__(self, result: dict[str, Any] | None = None, error: Exception | None = None) -> None:
        self.calls: list[str] = []
        self.result = result or {"checked": 0}
        self.error = error

    async def __call__(self, name: str, settings: Settings) -> dict[str, Any]:
        self.calls.append(name)
        if name == "moon-shot":
            raise UnknownJobError(name)
        if self.error is not None:
            raise self.error
        return self.result


def _settings(secret: str | None) -> Settings:
    return Settings(
        database=DatabaseSettings(DATABASE_URL="sqlite+aiosqlite:///:memory:"),
        cron=CronSettings(CRON_SECRET=secret),
    )


async def _chain_up(settings: Settings) -> bool:
    return True


def _client(
    settings: Settings,
    runner: RecordingRunner,
    chain_check: Callable[[Settings], Awaitable[bool]] = _chain_up,
) -> httpx.AsyncClient:
    app = create_app(settings, runner=runner, chain_check=chain_check)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestCronTrigger:
    """Tests for /api/cron/{job}."""

    @pytest.mark.asyncio
    async def test_runs_job_with_valid_secret(self) -> None:
        runner = RecordingRunner({"queued": 2})
        async with _client(_settings(SECRET), runner) as client:
            response = await client.get(
                "/api/cron/agent-strategy", headers={"Authorization": f"Bearer {SECRET}"}
            )

        assert response.status_code == 200
        assert response.json() == {"queued": 2}
        assert runner.calls == ["agent-strategy"]

    @pytest.mark.asyncio
    async def test_post_is_accepted(self) -> None:
        runner = RecordingRunner()
        async with _client(_settings(SECRET), runner) as client:
            response = await client.post(
                "/api/cron/order-monitor", headers={"Authorization": f"Bearer {SECRET}"}
            )
        assert response.status_code == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": SECRET}])
    async def test_rejects_bad_credentials(self, headers: dict[str, str]) -> None:
        runner = RecordingRunner()
        async with _client(_settings(SECRET), runner) as client:
            response = await client.get("/api/cron/agent-trader", headers=headers)

        assert response.status_code == 401
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_rejects_everything_without_configured_secret(self) -> None:
        runner = RecordingRunner()
        async with _client(_settings(None), runner) as client:
            response = await client.get("/api/cron/agent-trader", headers={"Authorization": "Bearer "})

        assert response.status_code == 401
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_unknown_job(self) -> None:
        async with _client(_settings(SECRET), RecordingRunner()) as client:
            response = await client.get("/api/cron/moon-shot", headers={"Authorization": f"Bearer {SECRET}"})

        assert response.status_code == 404
        assert "moon-shot" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_job_crash_is_500(self) -> None:
        runner = RecordingRunner(error=RuntimeError("database unreachable"))
        async with _client(_settings(SECRET), runner) as client:
            response = await client.get(
                "/api/cron/order-monitor", headers={"Authorization": f"Bearer {SECRET}"}
            )

        assert response.status_code == 500
        assert response.json()["detail"] == "database unreachable"


@pytest.mark.asyncio
async def test_health_needs_no_secret() -> None:
    async with _client(_settings(None), RecordingRunner()) as client:
        response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["chain"] is True
    assert body["version"] == __version__
    assert "agent-trader" in body["jobs"]


@pytest.mark.asyncio
async def test_health_reports_unreachable_chain() -> None:
    async def chain_down(settings: Settings) -> bool:
        return False

    async with _client(_settings(None), RecordingRunner(), chain_check=chain_down) as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"
    assert response.json()["chain"] is False


@pytest.mark.asyncio
async def test_health_survives_failing_chain_check() -> None:
    async def chain_broken(settings: Settings) -> bool:
        raise ValueError("bad rpc url")

    async with _client(_settings(None), RecordingRunner(), chain_check=chain_broken) as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"
