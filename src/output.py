"""Rich console output and markdown file save for discussion transcripts."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from src.cache import CacheStats
from src.consensus import explain_metrics
from src.metrics import SessionMetrics
from src.models import ConsensusVerdict, SessionState, Transcript, Turn

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STATE_STYLES = {
    SessionState.COMPLETE: "green",
    SessionState.FAILED: "red",
    SessionState.CANCELLED: "yellow",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _preview(text: str, words: int = 50) -> str:
    """Return first N words of a text."""
    all_words = text.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def _speaker_label(turn: Turn, names: dict[str, str]) -> str:
    return names.get(turn.speaker, turn.speaker.replace("_", " ").title())


def print_turn(turn: Turn, names: dict[str, str]) -> None:
    """Print a brief panel for one persona or error turn."""
    if turn.speaker == "error":
        console.print(Panel(turn.content, title="[bold red]Error[/bold red]", border_style="red"))
        return
    if turn.speaker not in ("persona_a", "persona_b"):
        return
    console.print(
        Panel(
            _preview(turn.content),
            title=f"[bold]{_speaker_label(turn, names)}[/bold]",
            subtitle=f"round {turn.round_number}",
            border_style="cyan" if turn.speaker == "persona_a" else "magenta",
        )
    )


def print_verdict(verdict: ConsensusVerdict, round_number: int) -> None:
    console.print(Rule(f"[bold cyan]Round {round_number} Verdict[/bold cyan]"))
    style = "green" if verdict.has_consensus else "yellow"
    console.print(
        Text(
            f"Consensus: {'yes' if verdict.has_consensus else 'no'} | "
            f"Confidence: {verdict.confidence:.0f} | "
            f"Action: {verdict.recommended_action} | "
            f"Coverage: {verdict.question_coverage} ({verdict.question_match_score:.0f}) | "
            f"Source: {verdict.source}",
            style=style,
        )
    )
    console.print(Text(verdict.reason, style="dim"))
    for issue in verdict.remaining_issues:
        console.print(Text(f"  open: {issue}", style="dim"))


def print_synthesis(transcript: Transcript, names: dict[str, str]) -> None:
    """Print the final answer, or the failure, using Rich markdown."""
    style = _STATE_STYLES.get(transcript.state, "white")
    synthesis = transcript.turns_for("synthesis")
    if not synthesis:
        console.print(Rule(f"[bold {style}]Discussion {transcript.state.value}[/bold {style}]"))
        if transcript.error:
            console.print(Text(transcript.error, style=style))
        return

    console.print(Rule(f"[bold {style}]Final Answer[/bold {style}]"))
    console.print(
        Text(
            f"Synthesized by: {names.get('synthesis', 'synthesis')} | "
            f"Rounds: {transcript.completed_rounds}",
            style="dim",
        )
    )
    console.print(Markdown(synthesis[-1].content))


def print_cache_stats(stats: CacheStats) -> None:
    console.print(
        Text(
            f"Cache: {stats.size} entries, {stats.hits} hits, {stats.misses} misses ({stats.hit_rate:.2f}% hit rate)",
            style="dim",
        )
    )


def print_metrics(metrics: SessionMetrics) -> None:
    summary = metrics.summary()
    console.print(
        Text(
            f"Calls: {summary.calls} ({summary.cache_hits} cached, {summary.retries} retries) | "
            f"Tokens: {summary.total_tokens} | Avg response: {summary.avg_response_sec:.2f}s",
            style="dim",
        )
    )
    for issue in metrics.detect_issues():
        console.print(f"[yellow]Performance: {issue}[/yellow]")


def render_markdown(transcript: Transcript, names: dict[str, str], duration_sec: float | None = None) -> str:
    """Render the full transcript as a markdown document."""
    question = transcript.original_question
    lines: list[str] = [
        f"# AI Duet Discussion: {question[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Participants:** {names.get('persona_a', 'persona_a')}, {names.get('persona_b', 'persona_b')}",
        f"**Rounds:** {transcript.completed_rounds}",
        f"**Status:** {transcript.state.value}",
    ]
    if duration_sec is not None:
        lines.append(f"**Duration:** {duration_sec:.1f}s")
    lines += ["", "## Question", "", question, "", "---", ""]

    for number in range(1, transcript.current_round + 1):
        round_turns = [t for t in transcript.round_turns(number) if t.speaker in ("persona_a", "persona_b")]
        if not round_turns:
            continue
        lines.append(f"## Round {number}")
        lines.append("")
        for turn in round_turns:
            lines.append(f"### {_speaker_label(turn, names)}")
            lines.append("")
            lines.append(turn.content)
            lines.append("")
        if number <= len(transcript.verdicts):
            verdict = transcript.verdicts[number - 1]
            lines.append(
                f"*Verdict: consensus={'yes' if verdict.has_consensus else 'no'}, "
                f"confidence={verdict.confidence:.0f}, action={verdict.recommended_action}, "
                f"coverage={verdict.question_coverage}, source={verdict.source}*"
            )
            lines.append("")

    for turn in transcript.turns_for("error"):
        lines += ["## Error", "", turn.content, ""]

    synthesis = transcript.turns_for("synthesis")
    if synthesis:
        lines += [
            f"## Final Answer (by {names.get('synthesis', 'synthesis')})",
            "",
            synthesis[-1].content,
            "",
        ]
    if transcript.final_verdict is not None and transcript.final_verdict.metrics is not None:
        lines += ["## Consensus Metrics", "", explain_metrics(transcript.final_verdict.metrics), ""]
    if transcript.metrics.calls:
        lines += ["## Session Metrics", "", *transcript.metrics.report_lines(), ""]

    return "\n".join(lines)


def save_to_file(
    transcript: Transcript,
    names: dict[str, str],
    output_dir: Path,
    duration_sec: float | None = None,
) -> Path:
    """Save the full discussion transcript as a markdown file.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = output_dir / f"{timestamp}_{_slug(transcript.original_question)}.md"
    filepath.write_text(render_markdown(transcript, names, duration_sec), encoding="utf-8")
    logger.info("Discussion saved to: %s", filepath)
    return filepath
