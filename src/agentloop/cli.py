from __future__ import annotations

import json
import os
from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)

def _load_env() -> None:
    load_dotenv()

def _settings():
    from agentloop.core.config import Settings

    return Settings.from_env()

def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from agentloop.core.logging_config import setup_logging

    settings = _settings()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)

def _store(workspace: Optional[str]):
    from agentloop.core.state_store import IterationStateStore

    settings = _settings()
    directory = os.path.abspath(workspace or settings.workspace_dir)
    return IterationStateStore(directory, settings.state_file_path)

@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (defaults to AGENTLOOP_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (defaults to AGENTLOOP_PORT)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """Run the event gateway."""
    _load_env()
    _setup_logging()
    settings = _settings()
    uvicorn.run(
        "agentloop.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )

@app.command()
def version() -> None:
    from agentloop import __version__

    typer.echo(__version__)

@app.command()
def status(
    workspace: Optional[str] = typer.Option(None, help="Workspace holding the loop state file"),
) -> None:
    """Show the persisted iteration loop, if any."""
    _load_env()
    store = _store(workspace)
    state = store.read()
    if state is None:
        typer.echo(f"No active iteration loop ({store.path}).")
        raise typer.Exit()
    typer.echo(f"Iteration: {state.iteration}/{state.max_iterations}")
    typer.echo(f"Marker:    {state.completion_marker}")
    typer.echo(f"Session:   {state.session_id or '-'}")
    typer.echo(f"Started:   {state.started_at}")
    typer.echo(f"Task:      {state.prompt}")

@app.command()
def clear(
    workspace: Optional[str] = typer.Option(None, help="Workspace holding the loop state file"),
) -> None:
    """Delete the persisted iteration loop."""
    _load_env()
    store = _store(workspace)
    if not store.exists():
        typer.echo("No iteration loop state to clear.")
        raise typer.Exit()
    if not store.clear():
        typer.secho(f"Failed to remove {store.path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Removed {store.path}")

@app.command()
def parse(text: str = typer.Argument(..., help="Prompt text that may contain an <iterationLoop> tag")) -> None:
    """Parse an iteration loop tag and print the result as JSON."""
    from agentloop.core.prompt_parser import parse_iteration_loop_tag

    typer.echo(json.dumps(parse_iteration_loop_tag(text).to_dict(), indent=2))

@app.command()
def config() -> None:
    """Print the effective settings (secrets masked)."""
    from agentloop.core.config import config_source_info

    _load_env()
    settings = _settings()
    typer.echo(json.dumps({"settings": settings.redacted(), "source": config_source_info(settings)}, indent=2))

@app.command("clear-logs")
def clear_logs_command() -> None:
    """Remove log files from the configured log directory."""
    from agentloop.core.logging_config import clear_logs

    _load_env()
    settings = _settings()
    removed = clear_logs(settings.log_dir)
    typer.echo(f"Removed {removed} log file(s) from {settings.log_dir}")

if __name__ == "__main__":
    app()
