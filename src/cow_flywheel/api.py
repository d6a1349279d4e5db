"""HTTP trigger surface for the external scheduler.

`GET|POST /api/cron/{job}` runs one job invocation and returns its JSON
summary. Calls must present `Authorization: Bearer <CRON_SECRET>`; when
no secret is configured every call is rejected. `GET /health` is open and
reports whether the chain RPC answers.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Awaitable, Callable
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from cow_flywheel import __version__
from cow_flywheel.config import Settings, get_settings
from cow_flywheel.jobs import JOB_NAMES, UnknownJobError, check_chain, run_job

logger = logging.getLogger(__name__)

JobRunner = Callable[..., Awaitable[dict[str, Any]]]
ChainCheck = Callable[[Settings], Awaitable[bool]]

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_app_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def require_cron_secret(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> None:
    """Reject calls that do not carry the configured scheduler secret."""
    secret = get_app_settings(request).cron.secret
    if secret is None or not secret.get_secret_value():
        logger.warning("CRON_SECRET is not configured; rejecting trigger")
        raise _unauthorized()
    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode(), secret.get_secret_value().encode()
    ):
        raise _unauthorized()


def create_app(
    settings: Settings | None = None,
    *,
    runner: JobRunner = run_job,
    chain_check: ChainCheck = check_chain,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Settings to run jobs with; loaded from the environment if omitted.
        runner: Job runner; tests inject a fake.
        chain_check: Chain health check used by `/health`.
    """
    app = FastAPI(title="cow-flywheel", version=__version__)
    app.state.settings = settings or get_settings()

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        try:
            chain_ok = await chain_check(get_app_settings(request))
        except Exception as e:
            logger.warning("Chain health check failed: %s", e)
            chain_ok = False
        return {
            "status": "ok" if chain_ok else "degraded",
            "chain": chain_ok,
            "version": __version__,
            "jobs": list(JOB_NAMES),
        }

    @app.api_route(
        "/api/cron/{job}",
        methods=["GET", "POST"],
        dependencies=[Depends(require_cron_secret)],
    )
    async def trigger(job: str, request: Request) -> dict[str, Any]:
        try:
            return await runner(job, get_app_settings(request))
        except UnknownJobError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown job: {job}") from None
        except Exception as e:
            logger.error("Job %s aborted: %s", job, e, exc_info=True)
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)) from e

    return app
