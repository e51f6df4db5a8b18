"""
RMRI CLI - Command-line interface for research gap discovery.

Commands:
- init: Write a starter rmri.toml and create the database
- serve: Run the HTTP API server
- run: Analyze a paper corpus in-process and print the ranked gaps
- status: Show progress of a run
- results: Show results of a run
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import EngineSettings, create_default_config, load_settings
from .utils.logging import setup_logging

app = typer.Typer(
    name="rmri",
    help="Recursive multi-agent research orchestration over a paper corpus",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()


def _load_settings(config_path: Path) -> EngineSettings:
    """Load rmri.toml, or defaults when the file does not exist."""
    if not config_path.exists():
        console.print(f"[dim]No {config_path} found, using default settings[/dim]")
        return EngineSettings()
    return load_settings(config_path)


def _load_papers(papers_path: Path) -> list[dict[str, Any]]:
    """Read papers from a JSON file: a list, or an object with a "papers" list."""
    with open(papers_path, encoding="utf-8") as f:
        data = json.load(f)
    papers = data.get("papers", []) if isinstance(data, dict) else data
    if not isinstance(papers, list):
        raise ValueError(f"Expected a list of papers in {papers_path}")
    return papers


async def _open_orchestrator(settings: EngineSettings):
    from .agents.backends import create_backend
    from .orchestrator import Orchestrator
    from .store.database import Database

    database = Database(str(settings.storage.db_path))
    await database.initialize()
    orchestrator = Orchestrator(
        database,
        engine_config=settings.engine,
        default_config=settings.defaults,
        backend=create_backend(settings.backend),
        backend_config=settings.backend,
    )
    return database, orchestrator


@app.command()
def init(
    path: Path = typer.Option(Path.cwd(), "--path", "-p", help="Project directory"),
    provider: str = typer.Option(
        "heuristic", "--provider", help="Backend provider: heuristic, anthropic or openrouter"
    ),
    model: str = typer.Option("claude-sonnet-4-20250514", "--model", "-m", help="Backend model"),
) -> None:
    """
    Initialize a project directory.

    Creates:
    - rmri.toml configuration file
    - .rmri/rmri.db SQLite database

    Example:
        rmri init
        rmri init --provider anthropic
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
        config_path = path / "rmri.toml"

        if config_path.exists():
            console.print(f"[yellow]Warning:[/yellow] {config_path} already exists.")
            raise typer.Exit(1)

        create_default_config(config_path, provider=provider, model=model)

        db_path = path / ".rmri" / "rmri.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        asyncio.run(_init_database(db_path))

        console.print(Panel.fit(
            f"[green]✓[/green] Initialized rmri project\n\n"
            f"Configuration: {config_path}\n"
            f"Database: {db_path}\n\n"
            "[dim]Next steps:[/dim]\n"
            "1. Set ANTHROPIC_API_KEY or OPENROUTER_API_KEY if using an LLM backend\n"
            "2. Analyze a corpus: rmri run \"your question\" papers.json\n"
            "3. Or start the API server: rmri serve",
            title="Project Initialized",
            border_style="green",
        ))

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


async def _init_database(db_path: Path) -> None:
    """Initialize SQLite database."""
    from .store.database import Database

    database = Database(str(db_path))
    await database.initialize()
    await database.close()


@app.command()
def serve(
    config: Path = typer.Option(Path("rmri.toml"), "--config", "-c", help="Config file path"),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Port"),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", "-l", help="Log level (default: [logging] level in rmri.toml)"
    ),
) -> None:
    """
    Run the HTTP API server.

    Example:
        rmri serve
        rmri serve --port 8080
    """
    try:
        import uvicorn

        from .web.server import create_app

        settings = _load_settings(config)
        level = log_level or settings.logging.level
        setup_logging(level=level, log_file=settings.logging.file)

        uvicorn.run(
            create_app(settings),
            host=host or settings.server.host,
            port=port or settings.server.port,
            log_level=level.lower(),
        )
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def run(
    query: str = typer.Argument(..., help="Research question"),
    papers: Path = typer.Argument(..., help="JSON file with the papers to analyze"),
    config: Path = typer.Option(Path("rmri.toml"), "--config", "-c", help="Config file path"),
    max_depth: Optional[int] = typer.Option(None, "--max-depth", "-d", help="Maximum rounds"),
    backend: Optional[str] = typer.Option(
        None, "--backend", "-b", help="Backend provider for micro agents"
    ),
    top: int = typer.Option(10, "--top", "-n", help="Number of gaps to show"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l", help="Log level"),
) -> None:
    """
    Analyze a paper corpus and print the ranked research gaps.

    Example:
        rmri run "graph neural networks for chemistry" papers.json
        rmri run "LLM evaluation" papers.json --max-depth 2 --backend anthropic
    """
    setup_logging(level=log_level)

    try:
        asyncio.run(_run(config, query, papers, max_depth, backend, top))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        raise typer.Exit(0)
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


async def _run(
    config_path: Path,
    query: str,
    papers_path: Path,
    max_depth: Optional[int],
    backend: Optional[str],
    top: int,
) -> None:
    """Run one orchestration to completion."""
    settings = _load_settings(config_path)
    paper_list = _load_papers(papers_path)
    database, orchestrator = await _open_orchestrator(settings)

    try:
        overrides = {"maxDepth": max_depth} if max_depth is not None else None
        run_record = await orchestrator.start(query, overrides)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task(f"Analyzing {len(paper_list)} papers...", total=None)
            handle = await orchestrator.execute(run_record.id, paper_list, backend)

            while not handle.task.done():
                report = await orchestrator.status(run_record.id)
                progress.update(
                    task,
                    description=f"Depth {report.current_depth} | {report.progress}% agents completed",
                )
                await asyncio.sleep(0.5)
            await handle.wait()

        await _print_status(orchestrator, run_record.id)
        await _print_gaps(orchestrator, run_record.id, top)
    finally:
        await orchestrator.close()
        await database.close()


@app.command()
def status(
    run_id: str = typer.Argument(..., help="Run ID"),
    config: Path = typer.Option(Path("rmri.toml"), "--config", "-c", help="Config file path"),
) -> None:
    """
    Show progress of a run.

    Example:
        rmri status 3f2a...
    """
    try:
        asyncio.run(_show_status(config, run_id))
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


async def _show_status(config_path: Path, run_id: str) -> None:
    settings = _load_settings(config_path)
    database, orchestrator = await _open_orchestrator(settings)
    try:
        await _print_status(orchestrator, run_id)
    finally:
        await database.close()


async def _print_status(orchestrator, run_id: str) -> None:
    """Print a status panel and the recent log."""
    report = await orchestrator.status(run_id)
    color = {"completed": "green", "failed": "red", "cancelled": "yellow"}.get(
        report.status.value, "blue"
    )

    lines = [
        f"Status: [{color}]{report.status.value}[/]",
        f"Progress: {report.progress}%",
        f"Depth: {report.current_depth}"
        + (f" (final, {'converged' if report.converged else 'depth limit'})"
           if report.final_depth is not None else ""),
        f"Elapsed: {report.elapsed_ms / 1000:.1f}s",
        "Agents: " + ", ".join(f"{k}={v}" for k, v in report.agents_by_status.items() if v),
    ]
    if report.error_message:
        lines.append(f"[red]Error:[/red] {report.error_message}")

    console.print(Panel.fit("\n".join(lines), title=f"Run {run_id}", border_style=color))

    if report.recent_logs:
        console.print("\n[bold]Recent log:[/bold]")
        for entry in report.recent_logs:
            style = {"error": "red", "warn": "yellow"}.get(entry.level.value, "dim")
            console.print(f"[{style}]{entry.created_at:%H:%M:%S} {entry.message}[/]")


@app.command()
def results(
    run_id: str = typer.Argument(..., help="Run ID"),
    config: Path = typer.Option(Path("rmri.toml"), "--config", "-c", help="Config file path"),
    top: int = typer.Option(10, "--top", "-n", help="Number of gaps to show"),
    as_json: bool = typer.Option(False, "--json", help="Print final results as JSON"),
) -> None:
    """
    Show the final results of a run.

    Example:
        rmri results 3f2a...
        rmri results 3f2a... --json > gaps.json
    """
    try:
        asyncio.run(_show_results(config, run_id, top, as_json))
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


async def _show_results(config_path: Path, run_id: str, top: int, as_json: bool) -> None:
    settings = _load_settings(config_path)
    database, orchestrator = await _open_orchestrator(settings)
    try:
        if as_json:
            final = await orchestrator.get_results(run_id, final_only=True)
            console.print_json(
                json.dumps([r.model_dump(mode="json") for r in final], ensure_ascii=False)
            )
        else:
            await _print_gaps(orchestrator, run_id, top)
    finally:
        await database.close()


async def _print_gaps(orchestrator, run_id: str, top: int) -> None:
    """Print the final gap ranking as a table."""
    from .store.models import ResultType

    ranking = await orchestrator.get_results(
        run_id, result_type=ResultType.GAP_RANKING, final_only=True
    )
    if not ranking:
        console.print("[yellow]No final gap ranking for this run.[/yellow]")
        return

    gaps = ranking[0].content.get("gaps", [])[:top]
    table = Table(title=f"Top {len(gaps)} research gaps")
    table.add_column("#", justify="right")
    table.add_column("Theme")
    table.add_column("Description")
    table.add_column("Score", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Papers", justify="right")

    for gap in gaps:
        confidence = gap.get("confidence", 0.0)
        flag = " [yellow]?[/yellow]" if gap.get("needs_verification") else ""
        table.add_row(
            str(gap.get("rank", "")),
            gap.get("theme", ""),
            gap.get("description", ""),
            f"{gap.get('total_score', 0.0):.2f}",
            f"{confidence:.0%}{flag}",
            str(len(gap.get("paper_ids", []))),
        )

    console.print(table)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
