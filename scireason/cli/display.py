"""CLI display utilities using Rich.

Provides console output for:
- Session headers and step-by-step progress
- Stop notices with what is needed next
- Session listings
- Evidence and hypothesis cards
- Heuristic analysis (executive summary, validity scores, phases)
"""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from scireason.contracts.schemas import (
    EvidenceCard,
    HypothesisCard,
    Session,
    SessionAnalysis,
    SessionStatus,
    StepResult,
    StrengthLevel,
)
from scireason.engine.prompts import WORKFLOW_STEPS

console = Console()


STATUS_COLORS = {
    SessionStatus.IN_PROGRESS: "yellow",
    SessionStatus.COMPLETED: "green",
    SessionStatus.STOPPED: "red",
}

STRENGTH_COLORS = {
    StrengthLevel.HIGH: "green",
    StrengthLevel.MEDIUM: "yellow",
    StrengthLevel.LOW: "red",
}


def _step_name(step_id: str) -> str:
    for step in WORKFLOW_STEPS:
        if step.id == step_id:
            return step.name
    return step_id


def _score_style(score: int) -> str:
    return "green" if score >= 65 else "yellow" if score >= 40 else "red"


def print_header(problem_statement: str, mode: str) -> None:
    """Print session header."""
    console.print()
    console.print(Panel(
        f"[bold white]Research Question:[/bold white] {problem_statement}\n"
        f"[dim]Mode:[/dim] {mode}",
        title="🔬 [bold cyan]Scientific Reasoning Engine[/bold cyan] 🔬",
        border_style="cyan",
    ))
    console.print()


def print_step_result(session: Session, result: StepResult) -> None:
    """Print one line per processed step."""
    name = _step_name(result.step_id)
    if result.is_success:
        extras = []
        if result.evidence_cards:
            extras.append(f"{len(result.evidence_cards)} evidence cards")
        if result.hypothesis_cards:
            extras.append(f"{len(result.hypothesis_cards)} hypotheses")
        suffix = f" [dim]({', '.join(extras)})[/dim]" if extras else ""
        console.print(f"  [green]✓[/green] [bold]{result.step_id}[/bold] {name}{suffix}")
    else:
        console.print(f"  [red]✗[/red] [bold]{result.step_id}[/bold] {name} [red]{result.reason}[/red]")


def print_stop(session: Session) -> None:
    """Explain why a session stopped and what the user can do next."""
    entry = session.step_data.get(f"step{session.current_step}") or {}
    needed = entry.get("whatIsNeededNext") or []
    queries = entry.get("suggestedQueries") or []

    lines = [f"[bold red]Stopped at step {session.current_step}[/bold red]: {session.stop_reason}"]
    if needed:
        lines.append("")
        lines.append("[bold]What is needed next:[/bold]")
        lines.extend(f"  • {item}" for item in needed)
    if queries:
        lines.append("")
        lines.append("[bold]Suggested queries:[/bold]")
        lines.extend(f"  • {q}" for q in queries)

    console.print(Panel("\n".join(lines), title="⛔ Session Stopped", border_style="red"))


def print_session(session: Session, max_steps: int) -> None:
    """Print a session summary and the steps it has completed."""
    color = STATUS_COLORS.get(SessionStatus(session.status), "white")
    console.print(Panel(
        f"[bold]{session.problem_statement}[/bold]\n\n"
        f"Id: {session.id}\n"
        f"Mode: {session.mode}\n"
        f"Status: [{color}]{session.status}[/{color}]\n"
        f"Progress: {session.current_step}/{max_steps}\n"
        f"Evidence cards: {len(session.evidence_card_ids)} | "
        f"Hypotheses: {len(session.hypothesis_card_ids)}",
        title="📋 Session",
        border_style=color,
    ))

    table = Table(title="Steps")
    table.add_column("Step", style="cyan")
    table.add_column("Name")
    table.add_column("Summary", style="dim")
    for index in session.completed_steps:
        sid = f"step{index}"
        data = session.step_data.get(sid) or {}
        summary = str(data.get("summary", ""))[:80]
        table.add_row(sid, _step_name(sid), summary)
    console.print(table)


def print_sessions_table(sessions: list[Session]) -> None:
    """Print sessions as a table, most recent first."""
    if not sessions:
        console.print("[dim]No sessions yet.[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("Id", style="cyan")
    table.add_column("Mode", style="dim")
    table.add_column("Status")
    table.add_column("Step", justify="center")
    table.add_column("Question")
    table.add_column("Updated", style="dim")

    for s in sessions:
        color = STATUS_COLORS.get(SessionStatus(s.status), "white")
        table.add_row(
            s.id,
            s.mode,
            f"[{color}]{s.status}[/]",
            str(s.current_step),
            s.problem_statement[:50],
            s.updated_at[:19],
        )

    console.print(table)


def print_analysis(analysis: SessionAnalysis) -> None:
    """Print the heuristic analysis of a session."""
    summary = analysis.executive_summary
    strength_color = STRENGTH_COLORS.get(StrengthLevel(summary.evidence_strength), "white")

    lines = [
        f"Evidence strength: [{strength_color}]{summary.evidence_strength}[/] "
        f"[dim]{summary.evidence_justification}[/dim]",
        "",
        "[bold]Can claim:[/bold]",
        *(f"  • {c}" for c in summary.core_takeaways.can_claim),
        "[bold]Cannot claim:[/bold]",
        *(f"  • {c}" for c in summary.core_takeaways.cannot_claim),
        "",
        "[bold]Limitations:[/bold]",
        *(f"  • {item}" for item in summary.limitations),
        "",
        "[bold]Next actions:[/bold]",
        *(f"  • {item}" for item in summary.next_actions),
    ]
    console.print(Panel("\n".join(lines), title="📊 Executive Summary", border_style="cyan"))

    decision = analysis.decision_summary
    decision_lines = [
        f"[bold]{decision.best_current_answer}[/bold]",
        f"Confidence: {decision.confidence_level}",
    ]
    if decision.selected_hypothesis:
        decision_lines.append(f"Selected hypothesis: {decision.selected_hypothesis}")
    for rejected in decision.rejected_hypotheses:
        decision_lines.append(f"[dim]Rejected {rejected.hypothesis}: {rejected.reason}[/dim]")
    console.print(Panel("\n".join(decision_lines), title="🧭 Decision", border_style="magenta"))

    scores = analysis.validity_scores
    table = Table(title="Validity Scores")
    table.add_column("Dimension", style="cyan")
    table.add_column("Score", justify="center")
    table.add_column("Explanation", style="dim")
    for label, item in (
        ("Internal", scores.internal_validity),
        ("External", scores.external_validity),
        ("Measurement", scores.measurement_validity),
        ("Statistical", scores.statistical_robustness),
    ):
        style = _score_style(item.score)
        table.add_row(label, f"[{style}]{item.score}[/]", item.explanation)
    console.print(table)

    if analysis.phase_feasibility:
        phases = Table(title="Phase Feasibility")
        phases.add_column("Phase", style="cyan")
        phases.add_column("Duration")
        phases.add_column("Cost")
        phases.add_column("Key risks", style="dim")
        for phase in analysis.phase_feasibility:
            phases.add_row(phase.phase, phase.duration, phase.cost_range, ", ".join(phase.failure_risks[:2]))
        console.print(phases)


def print_cards(evidence: list[EvidenceCard], hypotheses: list[HypothesisCard]) -> None:
    """Print a session's evidence and hypothesis cards."""
    if evidence:
        table = Table(title="Evidence Cards")
        table.add_column("Id", style="cyan")
        table.add_column("Citation")
        table.add_column("Intervention")
        table.add_column("Outcome")
        table.add_column("Robustness", justify="center")
        for card in evidence:
            wire = card.to_wire()
            outcome = wire["outcome"]
            table.add_row(
                card.id,
                card.source.citation[:60],
                card.intervention.agent,
                f"{outcome['variable']} ({outcome['direction']})",
                wire["validityProfile"]["robustness"],
            )
        console.print(table)

    if hypotheses:
        table = Table(title="Hypothesis Cards")
        table.add_column("Id", style="cyan")
        table.add_column("Statement")
        for card in hypotheses:
            table.add_row(card.id, card.statement)
        console.print(table)
