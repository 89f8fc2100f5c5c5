import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..audit.log import AuditLog
from ..database import DatabaseManager, db_manager
from ..engines.antinuke import AntinukeEngine
from ..engines.mute import MuteEngine, unmute_directives
from ..engines.warn import WarnEngine
from ..middleware import ErrorHandlerMiddleware, LoggingMiddleware
from ..permissions.manager import CapabilityAuthorizer
from ..registry.manager import ResourceRegistry
from .directives import Directive
from .event_system import DIRECTIVES_DISPATCH, INCIDENTS_CLOSED, MUTES_EXPIRED, EventSystem
from .guilds import GuildDirectory

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepReport:
    lifted_mutes: list[int] = field(default_factory=list)
    closed_incidents: list[int] = field(default_factory=list)
    directives: list[Directive] = field(default_factory=list)


class EnforcementCore:
    """Wires the store, the authorizer and the three engines into one object per worker."""

    def __init__(self, db: DatabaseManager | None = None) -> None:
        self.db = db or db_manager

        self.event_system = EventSystem()
        self.event_system.add_middleware(LoggingMiddleware())
        self.event_system.add_middleware(ErrorHandlerMiddleware())

        self.audit_log = AuditLog(self.db)
        self.authorizer = CapabilityAuthorizer(self.db, self.audit_log)
        self.registry = ResourceRegistry(self.db, self.audit_log, self.authorizer)
        self.guilds = GuildDirectory(self.db, self.audit_log, self.authorizer)
        self.warns = WarnEngine(self.db, self.audit_log, self.authorizer)
        self.mutes = MuteEngine(self.db, self.audit_log, self.authorizer, self.registry)
        self.antinuke = AntinukeEngine(self.db, self.audit_log, self.authorizer)

        # Service registry for convenient access
        self.services: dict[str, Any] = {}
        self._register_core_services()

    def _register_core_services(self) -> None:
        self.services.update(
            {
                "db": self.db,
                "events": self.event_system,
                "audit": self.audit_log,
                "authorizer": self.authorizer,
                "registry": self.registry,
                "guilds": self.guilds,
                "warns": self.warns,
                "mutes": self.mutes,
                "antinuke": self.antinuke,
            }
        )

    def register_service(self, name: str, service: Any) -> None:
        """Register or override a service in the registry."""
        self.services[name] = service

    def get_service(self, name: str) -> Any:
        return self.services.get(name)

    async def start(self) -> None:
        await self.db.create_tables()
        if not await self.db.health_check():
            raise RuntimeError("Database is not reachable")
        logger.info("Enforcement core started")

    async def close(self) -> None:
        await self.db.close()

    async def dispatch(self, directives: Iterable[Directive]) -> None:
        """Hand directives to whatever applier listens on the event system."""
        directives = list(directives)
        if not directives:
            return

        if not self.event_system.get_listeners(DIRECTIVES_DISPATCH):
            logger.warning(f"No applier attached, {len(directives)} directive(s) not applied")
        await self.event_system.emit(DIRECTIVES_DISPATCH, directives)

    async def run_sweeps(self, now: datetime | None = None) -> SweepReport:
        """One pass of every periodic sweep: mute expiry, then incident closure."""
        report = SweepReport()

        expired = await self.mutes.sweep_expired(now)
        report.lifted_mutes = [case.id for case in expired]
        for case in expired:
            report.directives.extend(unmute_directives(case))
        await self.dispatch(report.directives)
        if expired:
            await self.event_system.emit(MUTES_EXPIRED, expired)

        report.closed_incidents = await self.antinuke.close_quiet_incidents(now)
        if report.closed_incidents:
            await self.event_system.emit(INCIDENTS_CLOSED, report.closed_incidents)

        return report
