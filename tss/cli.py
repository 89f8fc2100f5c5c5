import asyncio
import logging
from typing import Optional

import typer

from config.settings import settings

app = typer.Typer(
    name="tss",
    help="Moderation enforcement core: warn points, mutes and antinuke incidents",
    add_completion=False,
)


def setup_logging(level: str = "INFO") -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


def _build_core():
    from tss.core.engine import EnforcementCore

    return EnforcementCore()


async def _run_worker(with_api: bool) -> None:
    from tss.core.scheduler import SweepScheduler
    from tss.web import WebApp

    core = _build_core()
    await core.start()
    scheduler = SweepScheduler(core)
    scheduler.start()
    try:
        if with_api:
            await WebApp(core).start()
        else:
            # Sweeps only; stops on Ctrl+C
            await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await core.close()


def _run_gateway(with_api: bool) -> None:
    import hikari

    from tss.core.event_system import DIRECTIVES_DISPATCH
    from tss.core.scheduler import SweepScheduler
    from tss.platform import GatewayBridge, HikariApplier
    from tss.web import WebApp

    core = _build_core()
    bot = hikari.GatewayBot(token=settings.discord_token, intents=hikari.Intents.GUILDS | hikari.Intents.GUILD_MODERATION)
    applier = HikariApplier(bot.rest)
    core.register_service("gateway", bot)
    core.register_service("applier", applier)
    core.event_system.add_listener(DIRECTIVES_DISPATCH, applier.apply)
    GatewayBridge(core).attach(bot)

    scheduler = SweepScheduler(core)
    web = WebApp(core) if with_api else None
    background: list[asyncio.Task] = []

    @bot.listen(hikari.StartedEvent)
    async def on_started(event: hikari.StartedEvent) -> None:
        await core.start()
        scheduler.start()
        if web is not None:
            background.append(asyncio.create_task(web.start()))

    @bot.listen(hikari.StoppingEvent)
    async def on_stopping(event: hikari.StoppingEvent) -> None:
        if web is not None:
            await web.stop()
        await scheduler.stop()
        await core.close()

    bot.run()


@app.command()
def run(
    api: bool = typer.Option(False, "--api", help="Also serve the incident API"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Set log level"),
) -> None:
    """Run the sweep worker, plus the gateway bridge when a Discord token is configured."""
    setup_logging(log_level or settings.log_level)

    if settings.discord_token:
        _run_gateway(api)
    else:
        logging.getLogger(__name__).warning("No Discord token configured; directives will not be applied")
        try:
            asyncio.run(_run_worker(api))
        except KeyboardInterrupt:
            typer.echo("Stopped")


@app.command()
def sweep(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Set log level"),
) -> None:
    """Run a single sweep pass and report what it did."""
    setup_logging(log_level or settings.log_level)

    async def run_sweep():
        core = _build_core()
        try:
            await core.start()
            return await core.run_sweeps()
        finally:
            await core.close()

    report = asyncio.run(run_sweep())
    typer.echo(f"Lifted {len(report.lifted_mutes)} expired mute(s)")
    typer.echo(f"Closed {len(report.closed_incidents)} quiet incident(s)")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Set log level"),
) -> None:
    """Serve the incident API."""
    setup_logging(log_level or settings.log_level)

    async def run_api():
        from tss.web import WebApp

        core = _build_core()
        try:
            await core.start()
            await WebApp(core).start(host, port)
        finally:
            await core.close()

    asyncio.run(run_api())


@app.command()
def db(
    action: str = typer.Argument(help="Action: create, reset"),
) -> None:
    """Database management commands."""
    async def run_db_command():
        from tss.database import db_manager

        try:
            if action == "create":
                await db_manager.create_tables()
                typer.echo("✅ Database tables created")
            elif action == "reset":
                confirm = typer.confirm("⚠️  This will delete all data. Continue?")
                if confirm:
                    await db_manager.drop_tables()
                    await db_manager.create_tables()
                    typer.echo("✅ Database reset completed")
            else:
                typer.echo(f"Unknown action: {action}")
                raise typer.Exit(code=1)
        finally:
            await db_manager.close()

    asyncio.run(run_db_command())


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
