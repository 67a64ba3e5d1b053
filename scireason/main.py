"""Main CLI entry point for the Scientific Reasoning Engine."""

import asyncio
from typing import Awaitable, Optional, TypeVar

import typer
from rich.console import Console

from scireason.cli.display import (
    print_analysis,
    print_cards,
    print_header,
    print_session,
    print_sessions_table,
    print_step_result,
    print_stop,
)
from scireason.config import Settings, get_settings
from scireason.contracts.schemas import SessionMode, SessionStatus
from scireason.engine.llm_client import LLMClient
from scireason.engine.processor import StepProcessor, StepRunner
from scireason.engine.remote import RemoteStepClient
from scireason.kb.card_store import JsonCardStore
from scireason.kb.session_store import select_session_store
from scireason.logging_setup import configure_logging
from scireason.verify.heuristics import analyze_session
from scireason.workflow.orchestrator import SessionOrchestrator

T = TypeVar("T")

app = typer.Typer(
    name="scireason",
    help="Scientific Reasoning Engine - structured reasoning over research questions",
    add_completion=False,
)
console = Console()


def _build_runner(settings: Settings, token: str | None) -> StepRunner:
    if settings.api_url:
        return RemoteStepClient(settings.api_url, token=token)
    client = LLMClient(provider=settings.llm_provider)
    if not client.has_credentials:
        console.print("[red]Error:[/red] No LLM API key set (CEREBRAS_API_KEY, GROQ_API_KEY or GEMINI_API_KEY).")
        console.print("Set one in your environment or .env file, or point SCIREASON_API_URL at a server.")
        raise typer.Exit(1)
    return StepProcessor(client)


def _build_orchestrator(token: str | None, with_runner: bool = True) -> SessionOrchestrator:
    settings = get_settings()
    configure_logging(settings.log_level)
    runner = _build_runner(settings, token) if with_runner else None
    return SessionOrchestrator(
        select_session_store(settings, token),
        JsonCardStore(settings.data_dir),
        runner,
        config=settings.reasoning_config(),
        callbacks={"on_step": print_step_result},
    )


def _run(orchestrator: SessionOrchestrator, work: Awaitable[T]) -> T:
    """Run one command's work, then close the orchestrator's HTTP clients."""

    async def _main() -> T:
        try:
            return await work
        finally:
            await orchestrator.aclose()

    return asyncio.run(_main())


async def _report(orchestrator: SessionOrchestrator, session_id: str, with_cards: bool = False) -> None:
    session = await orchestrator.get_session(session_id)
    if session is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(1)
    print_session(session, orchestrator.max_steps(session.mode))
    if with_cards:
        print_cards(*await orchestrator.session_cards(session))
    if session.status == SessionStatus.STOPPED:
        print_stop(session)


@app.command()
def run(
    problem: str = typer.Argument(..., help="Research question or problem statement"),
    mode: SessionMode = typer.Option(SessionMode.EVIDENCE, "--mode", "-m", help="evidence (steps 0-6) or roadmap (steps 0-9)"),
    token: Optional[str] = typer.Option(None, "--token", envvar="SCIREASON_TOKEN", help="Bearer token for a remote server"),
    analyze: bool = typer.Option(True, "--analyze/--no-analyze", help="Print the heuristic analysis at the end"),
) -> None:
    """Run a research question through the reasoning pipeline.

    Example:
        scireason run "Does intermittent fasting improve insulin sensitivity?" --mode roadmap
    """
    orchestrator = _build_orchestrator(token)
    print_header(problem, mode.value)

    async def _run_session():
        session = await orchestrator.create_session(problem, mode)
        session = await orchestrator.run_to_completion(session.id)

        if session.status == SessionStatus.STOPPED:
            print_stop(session)
        else:
            console.print(f"\n[bold green]Session complete[/bold green] [dim]{session.id}[/dim]")
            if analyze:
                print_analysis(analyze_session(session))
        return session

    try:
        _run(orchestrator, _run_session())
    except KeyboardInterrupt:
        console.print("\n[yellow]Session interrupted by user[/yellow]")
        raise typer.Exit(0)


@app.command(name="continue")
def continue_(
    session_id: str = typer.Argument(..., help="Session id"),
    token: Optional[str] = typer.Option(None, "--token", envvar="SCIREASON_TOKEN"),
) -> None:
    """Resume an in-progress session until it completes or stops."""
    orchestrator = _build_orchestrator(token)

    async def _continue():
        await orchestrator.run_to_completion(session_id)
        await _report(orchestrator, session_id)

    _run(orchestrator, _continue())


@app.command()
def retry(
    session_id: str = typer.Argument(..., help="Session id"),
    token: Optional[str] = typer.Option(None, "--token", envvar="SCIREASON_TOKEN"),
) -> None:
    """Re-run the step that stopped a session, then continue."""
    orchestrator = _build_orchestrator(token)

    async def _retry():
        await orchestrator.retry_step(session_id)
        await orchestrator.run_to_completion(session_id)
        await _report(orchestrator, session_id)

    _run(orchestrator, _retry())


@app.command(name="list")
def list_sessions(
    token: Optional[str] = typer.Option(None, "--token", envvar="SCIREASON_TOKEN"),
) -> None:
    """List sessions, most recently updated first."""
    orchestrator = _build_orchestrator(token, with_runner=False)
    print_sessions_table(_run(orchestrator, orchestrator.list_sessions()))


@app.command()
def show(
    session_id: str = typer.Argument(..., help="Session id"),
    token: Optional[str] = typer.Option(None, "--token", envvar="SCIREASON_TOKEN"),
) -> None:
    """Show a session's status, completed steps and cards."""
    orchestrator = _build_orchestrator(token, with_runner=False)
    _run(orchestrator, _report(orchestrator, session_id, with_cards=True))


@app.command()
def analyze(
    session_id: str = typer.Argument(..., help="Session id"),
    token: Optional[str] = typer.Option(None, "--token", envvar="SCIREASON_TOKEN"),
) -> None:
    """Print the heuristic analysis of a session."""
    orchestrator = _build_orchestrator(token, with_runner=False)
    session = _run(orchestrator, orchestrator.get_session(session_id))
    if session is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(1)
    print_analysis(analyze_session(session))


@app.command()
def delete(
    session_id: str = typer.Argument(..., help="Session id"),
    token: Optional[str] = typer.Option(None, "--token", envvar="SCIREASON_TOKEN"),
) -> None:
    """Delete a session."""
    orchestrator = _build_orchestrator(token, with_runner=False)
    if not _run(orchestrator, orchestrator.delete_session(session_id)):
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(1)
    console.print(f"Deleted [bold]{session_id}[/bold]")


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Port"),
) -> None:
    """Start the HTTP API server."""
    import uvicorn

    configure_logging(get_settings().log_level)
    uvicorn.run("scireason.server:app", host=host, port=port)


@app.command()
def version() -> None:
    """Show version information."""
    from scireason import __version__
    console.print(f"[bold]SciReason[/bold] v{__version__}")
    console.print("Scientific Reasoning Engine")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
