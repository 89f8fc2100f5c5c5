import asyncio
import hmac
import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

import uvicorn
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from config.settings import settings

from ..core.actor import SYSTEM, Actor
from ..core.directives import GuildSnapshot
from ..core.engine import EnforcementCore
from ..core.errors import AuthorizationDenied, Conflict, EnforcementError, NotFound, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ERROR_STATUS: list[tuple[type[EnforcementError], int]] = [
    (NotFound, 404),
    (Conflict, 409),
    (ValidationError, 422),
    (AuthorizationDenied, 403),
]


def status_for(error: EnforcementError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 400


class WebApp:
    """Token-protected HTTP API for reviewing and restoring antinuke incidents."""

    def __init__(self, core: EnforcementCore, api_token: str | None = None) -> None:
        self.core = core
        self.api_token = api_token if api_token is not None else settings.api_token
        self.app = FastAPI(
            title="TSS Incident API",
            description="Review, approve and roll back antinuke incidents",
            version="1.0.0",
        )
        self._server: uvicorn.Server | None = None

        self._setup_error_handlers()
        self._setup_routes()

    def require_token(self, authorization: str | None = Header(default=None)) -> None:
        if not self.api_token or not authorization:
            raise HTTPException(status_code=401, detail="Missing credentials")

        token = authorization.removeprefix("Bearer ").strip()
        if not hmac.compare_digest(token.encode(), self.api_token.encode()):
            raise HTTPException(status_code=401, detail="Invalid credentials")

    @staticmethod
    def resolve_actor(
        x_actor_id: int | None = Header(default=None),
        x_actor_roles: str | None = Header(default=None),
    ) -> Actor:
        """Act for a member when the caller names one, otherwise as the system."""
        if x_actor_id is None:
            return SYSTEM
        try:
            roles = [int(role) for role in (x_actor_roles or "").split(",") if role.strip()]
        except ValueError:
            raise HTTPException(status_code=400, detail="X-Actor-Roles must be comma-separated ids") from None
        return Actor.member(x_actor_id, roles)

    async def _bounded(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=settings.api_timeout_seconds)
        except asyncio.TimeoutError:
            raise HTTPException(status_code=504, detail="Enforcement core timed out") from None

    def _setup_error_handlers(self) -> None:
        @self.app.exception_handler(EnforcementError)
        async def enforcement_error(request: Request, exc: EnforcementError) -> JSONResponse:
            status = status_for(exc)
            logger.info(f"{request.method} {request.url.path} -> {status}: {exc}")
            return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": str(exc)})

    def _setup_routes(self) -> None:
        authenticated = [Depends(self.require_token)]

        @self.app.get("/health")
        async def health_check() -> dict[str, Any]:
            """Health check endpoint"""
            return {"status": "ok"}

        @self.app.get("/guilds/{guild_id}/incidents", dependencies=authenticated)
        async def list_incidents(
            guild_id: int, limit: int = 20, actor: Actor = Depends(self.resolve_actor)
        ) -> dict[str, Any]:
            summaries = await self._bounded(self.core.antinuke.list_incidents(guild_id, limit, actor))
            state = await self._bounded(self.core.antinuke.guard_state(guild_id))
            return {"guard_state": state.value, "incidents": [summary.to_dict() for summary in summaries]}

        @self.app.post("/incidents/{incident_id}/approve", dependencies=authenticated)
        async def approve_incident(incident_id: int, actor: Actor = Depends(self.resolve_actor)) -> dict[str, Any]:
            action = await self._bounded(self.core.antinuke.approve(incident_id, actor))
            return {"incident_id": incident_id, "action_id": action.id, "kind": action.kind}

        @self.app.post("/incidents/{incident_id}/restore", dependencies=authenticated)
        async def restore_incident(
            incident_id: int,
            current: GuildSnapshot | None = Body(default=None),
            apply: bool = False,
            actor: Actor = Depends(self.resolve_actor),
        ) -> dict[str, Any]:
            directives = await self._bounded(self.core.antinuke.rollback(incident_id, actor, current))
            if apply:
                await self.core.dispatch(directives)
            return {
                "incident_id": incident_id,
                "applied": apply,
                "directives": [directive.describe() for directive in directives],
            }

    async def start(self, host: str | None = None, port: int | None = None) -> None:
        """Start the web server"""
        host = host or settings.api_host
        port = port or settings.api_port
        if not self.api_token:
            logger.warning("API token is not configured; every protected route will answer 401")

        config = uvicorn.Config(app=self.app, host=host, port=port, log_level=settings.log_level.lower())
        self._server = uvicorn.Server(config)

        logger.info(f"Starting incident API on {host}:{port}")
        await self._server.serve()

    async def stop(self) -> None:
        if self._server:
            logger.info("Stopping incident API...")
            self._server.should_exit = True
