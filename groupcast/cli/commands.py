"""CLI commands for groupcast."""

from __future__ import annotations

import asyncio
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from groupcast import __logo__, __version__
from groupcast.config.schema import LoggingConfig

app = typer.Typer(
    name="groupcast",
    help=f"{__logo__} groupcast - multi-tenant group broadcaster",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} groupcast v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """groupcast - multi-tenant group broadcaster."""
    pass


def _configure_logging(config: LoggingConfig, verbose: bool = False) -> None:
    """Install loguru sinks from config."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else config.level)
    if config.file:
        logger.add(config.file, level=config.level, rotation=config.rotation, enqueue=True)


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """Initialize groupcast configuration and credential directory."""
    from groupcast.config.loader import get_config_path, load_config, save_config
    from groupcast.config.schema import Config
    from groupcast.utils.helpers import ensure_dir

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if typer.confirm("Overwrite with defaults?"):
            config = Config()
            save_config(config)
            console.print(f"[green]✓[/green] Config reset to defaults at {config_path}")
        else:
            config = load_config()
            save_config(config)
            console.print(f"[green]✓[/green] Config refreshed at {config_path} (existing values preserved)")
    else:
        config = Config()
        save_config(config)
        console.print(f"[green]✓[/green] Created config at {config_path}")

    auth_path = config.sessions.auth_path
    if not auth_path.exists():
        ensure_dir(auth_path)
        console.print(f"[green]✓[/green] Created auth directory at {auth_path}")

    console.print(f"\n{__logo__} groupcast is ready!")
    console.print("\nNext steps:")
    console.print("  1. Start the WhatsApp bridge (see bridge.httpUrl / bridge.wsUrl in the config)")
    console.print("  2. Run: [cyan]groupcast gateway[/cyan]")


# ============================================================================
# Status / Tenants
# ============================================================================


@app.command()
def status():
    """Show groupcast configuration and persisted tenants."""
    from groupcast.config.loader import get_config_path, load_config
    from groupcast.session.credentials import CredentialStore

    config_path = get_config_path()
    config = load_config()
    auth_path = config.sessions.auth_path

    console.print(f"{__logo__} groupcast Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Auth dir: {auth_path} {'[green]✓[/green]' if auth_path.exists() else '[red]✗[/red]'}")

    tenants = CredentialStore(auth_path).list_tenants() if auth_path.exists() else []
    console.print(f"Tenants: {len(tenants)}/{config.sessions.max_sessions}")
    console.print(f"Cache: {config.cache.capacity} messages per conversation")
    console.print(f"Pairing budget: {config.connection.challenge_budget} challenges")
    console.print(f"Bridge: {config.bridge.http_url} / {config.bridge.ws_url}")


@app.command()
def tenants():
    """List tenants with stored credentials."""
    from groupcast.config.loader import load_config
    from groupcast.session.credentials import CredentialStore

    config = load_config()
    auth_path = config.sessions.auth_path
    stored = CredentialStore(auth_path).list_tenants() if auth_path.exists() else []

    if not stored:
        console.print("No tenants with stored credentials.")
        return

    table = Table(title="Tenants")
    table.add_column("Tenant", style="cyan")
    table.add_column("Credentials")
    for tenant_id in stored:
        table.add_row(tenant_id, str(auth_path / tenant_id))
    console.print(table)


@app.command()
def clear(
    tenant: str = typer.Argument(..., help="Tenant id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Wipe a tenant's stored credentials (forces a new pairing)."""
    from groupcast.config.loader import load_config
    from groupcast.session.credentials import CredentialStore
    from groupcast.session.errors import SessionError

    config = load_config()
    try:
        store = CredentialStore(config.sessions.auth_path)
        if not store.exists(tenant):
            console.print(f"No stored credentials for {tenant}")
            return
        if not yes and not typer.confirm(f"Clear credentials of {tenant}?"):
            console.print("Aborted.")
            raise typer.Exit()
        store.clear(tenant)
    except SessionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Cleared credentials of {tenant}")


# ============================================================================
# Gateway
# ============================================================================


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Verbose output"),
):
    """Run the session manager against the bridge."""
    from groupcast.bus.queue import EventBus
    from groupcast.client.factory import create_client_factory
    from groupcast.config.loader import load_config
    from groupcast.session.manager import SessionManager

    config = load_config()
    _configure_logging(config.logging, verbose)

    console.print(f"{__logo__} Starting groupcast gateway...")

    async def run():
        bus = EventBus()
        manager = SessionManager(config, create_client_factory(config), bus)

        async def log_events():
            while True:
                event = await bus.consume()
                logger.info(f"[{event.tenant_id}] {event.name} {event.payload}")

        tasks = [
            asyncio.create_task(log_events()),
            asyncio.create_task(manager.run_idle_eviction()),
        ]
        for tenant_id in list(manager.sessions):
            try:
                await manager.start(tenant_id)
            except Exception as e:
                logger.error(f"Failed to start {tenant_id}: {e}")

        console.print(f"[green]✓[/green] {len(manager.sessions)} tenant(s) loaded")
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await manager.stop_all()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\nShutting down...")


if __name__ == "__main__":
    app()
