"""
Nebula CLI

Command-line interface for catalog administration and the sweeps an external
scheduler drives.

Commands:
- init-db: Create the engine tables
- seed-catalog: Load a catalog JSON document
- init-tree: Seed a player's root upgrade nodes
- advance: Add progress to a player's upgrade node
- evaluate-events: Run one event evaluation pass for a player
- expire-offers: Expire market offers past their expiry
- show-player: Print a player's tree, events and balances
"""

from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from basecore.logging import setup_logging
from nebula_core.errors import NebulaError

app = typer.Typer(
    name="nebula-cli",
    help="Nebula progression and economy engines CLI",
)

console = Console()


def get_db():
    """Get database session."""
    from basecore.db import get_db as _get_db
    return next(_get_db())


def _fail(error: NebulaError) -> None:
    rprint(f"[red]{error.kind}: {escape(str(error))}[/red]")
    raise typer.Exit(1)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override LOG_LEVEL"),
):
    setup_logging(level=log_level)


@app.command()
def init_db():
    """Create all engine tables (development and tests; production uses migrations)."""
    from basecore.db import get_engine
    from nebula_core.persistence.models import NebulaBase

    NebulaBase.metadata.create_all(get_engine())
    rprint("[green]Tables created[/green]")


@app.command()
def seed_catalog(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Catalog JSON file"),
):
    """Validate and upsert upgrade nodes, event templates and commission rates."""
    from nebula_core.catalog import load_catalog_file, seed_catalog as _seed_catalog

    db = get_db()
    try:
        counts = _seed_catalog(db, load_catalog_file(path))
    except NebulaError as e:
        _fail(e)
    finally:
        db.close()

    rprint("[green]Catalog seeded:[/green]")
    for key, value in counts.items():
        rprint(f"  {key}: {value}")


@app.command()
def init_tree(
    player_id: int = typer.Argument(..., help="Player ID"),
):
    """Create a zero-progress row for each root upgrade node."""
    from nebula_core.engines.upgrades import UpgradeTreeEngine

    db = get_db()
    try:
        snapshot = UpgradeTreeEngine(db).initialize_tree(player_id)
    except NebulaError as e:
        _fail(e)
    finally:
        db.close()

    rprint(f"[green]Tree initialized for player {player_id}: {len(snapshot.upgrades)} nodes[/green]")


@app.command()
def advance(
    player_id: int = typer.Argument(..., help="Player ID"),
    slug: str = typer.Argument(..., help="Upgrade node slug"),
    delta: int = typer.Argument(..., help="Progress to add"),
):
    """Add progress to an upgrade node."""
    from nebula_core.engines.upgrades import UpgradeTreeEngine

    db = get_db()
    try:
        result = UpgradeTreeEngine(db).advance_progress(player_id, slug, delta)
    except NebulaError as e:
        _fail(e)
    finally:
        db.close()

    upgrade = result.upgrade
    rprint(f"{upgrade.slug}: {upgrade.progress}/{upgrade.target_progress}")
    if upgrade.completed:
        rprint("[green]Completed[/green]")
    if result.unlocked:
        rprint(f"[green]Unlocked: {', '.join(result.unlocked)}[/green]")


@app.command()
def evaluate_events(
    player_id: int = typer.Argument(..., help="Player ID"),
):
    """Run one event evaluation pass for a player."""
    from nebula_core.engines.events import EventTriggerEngine

    db = get_db()
    try:
        result = EventTriggerEngine(db).evaluate(player_id)
    except NebulaError as e:
        _fail(e)
    finally:
        db.close()

    rprint(f"Triggered: {', '.join(e.slug for e in result.triggered_events) or '-'}")
    rprint(f"Expired: {', '.join(e.slug for e in result.expired_events) or '-'}")
    rprint(f"Active: {len(result.active_events)}")
    for target, value in sorted(result.aggregated_multipliers.items()):
        rprint(f"  {target}: x{value}")


@app.command()
def expire_offers():
    """Expire ACTIVE market offers past their expiry and return escrow."""
    from nebula_core.engines.market import MarketTransactionEngine

    db = get_db()
    try:
        expired = MarketTransactionEngine(db).expire_offers()
    except NebulaError as e:
        _fail(e)
    finally:
        db.close()

    rprint(f"[green]Expired {len(expired)} offers[/green]")


@app.command()
def show_player(
    player_id: int = typer.Argument(..., help="Player ID"),
):
    """Show a player's upgrade tree, events and balances."""
    from nebula_core.engines.events import EventTriggerEngine
    from nebula_core.engines.upgrades import UpgradeTreeEngine
    from nebula_core.persistence.ledger import Ledger

    db = get_db()
    try:
        tree = UpgradeTreeEngine(db).get_tree(player_id)
        events = EventTriggerEngine(db).list_player_events(player_id)
        balances = Ledger(db).balances(player_id)
    finally:
        db.close()

    table = Table(title=f"Upgrades for player {player_id}")
    table.add_column("Slug", style="dim")
    table.add_column("Level")
    table.add_column("Progress")
    table.add_column("Completed")
    for node in tree.upgrades:
        table.add_row(
            node.slug,
            f"{node.level}/{node.max_level}",
            f"{node.progress}/{node.target_progress}",
            "yes" if node.completed else "no",
        )
    console.print(table)

    table = Table(title="Events")
    table.add_column("Slug", style="dim")
    table.add_column("Status")
    table.add_column("Triggered")
    table.add_column("Expires")
    for event in events:
        table.add_row(
            event.slug,
            event.status,
            event.triggered_at.strftime("%Y-%m-%d %H:%M"),
            event.expires_at.strftime("%Y-%m-%d %H:%M") if event.expires_at else "-",
        )
    console.print(table)

    table = Table(title="Balances")
    table.add_column("Currency", style="dim")
    table.add_column("Amount")
    for currency, amount in sorted(balances.items()):
        table.add_row(currency, str(amount))
    console.print(table)


if __name__ == "__main__":
    app()
