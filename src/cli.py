"""Click CLI — orchestrates config loading, provider setup, the discussion session, and output."""

import asyncio
import logging
import sys
import time
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, PersonaConfig, load_config
from src.cache import ResponseCache
from src.healthcheck import persona_labels, run_health_checks
from src.models import ConsensusVerdict, Transcript, Turn
from src.output import print_cache_stats, print_metrics, print_synthesis, print_turn, print_verdict, save_to_file
from src.providers.anthropic import AnthropicProvider
from src.providers.base import AIProvider, ProviderError
from src.providers.gemini import GeminiProvider
from src.providers.openai_provider import OpenAIProvider
from src.session import SessionManager

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

# Keyed by the `sdk` field of a model entry in settings.yaml.
PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Build one provider per model referenced by a persona. Returns dict keyed by model key."""
    providers: dict[str, AIProvider] = {}
    for model_key in sorted({p.model for p in config.personas.values()}):
        model_cfg = config.models[model_key]
        if model_cfg.sdk not in PROVIDER_CLASSES:
            logger.warning("Model '%s' uses unknown sdk '%s', skipping", model_key, model_cfg.sdk)
            continue
        try:
            providers[model_key] = PROVIDER_CLASSES[model_cfg.sdk](model_cfg)
        except ProviderError as exc:
            logger.warning("Failed to instantiate provider '%s': %s", model_key, exc)
    return providers


def _check_providers(providers: dict[str, AIProvider], personas: dict[str, PersonaConfig]) -> None:
    """Run health checks, print results, and ask the user what to do on failures.

    Exits if the user declines to continue.
    """
    console.print("\n[bold]Checking providers...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(run_health_checks(providers))
    labels = persona_labels(personas)

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        label = labels.get(name, name)
        if ok:
            console.print(f"  [green]OK  [/green] {label}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {label}: {escape(short_err)}")
            failed_names.append(label)

    if not failed_names:
        console.print()
        return

    console.print(
        f"\n[yellow]{len(failed_names)} provider(s) failed:[/yellow] {', '.join(failed_names)}"
    )
    console.print("Every persona needs its model; the discussion will likely fail.")

    if not click.confirm("Continue anyway?", default=False):
        sys.exit(0)

    console.print()


def _report(
    transcript: Transcript,
    names: dict[str, str],
    cache: ResponseCache | None,
    output_dir: Path,
    duration_sec: float,
) -> Path:
    for turn in transcript.turns:
        print_turn(turn, names)
        if turn.speaker == "persona_b" and turn.round_number is not None and turn.round_number <= len(transcript.verdicts):
            print_verdict(transcript.verdicts[turn.round_number - 1], turn.round_number)
    print_synthesis(transcript, names)
    if cache is not None:
        print_cache_stats(cache.stats())
    print_metrics(transcript.metrics)

    saved_path = save_to_file(transcript, names, output_dir, duration_sec=duration_sec)
    console.print(f"\n[dim]Saved to: {saved_path}[/dim]")
    return saved_path


async def _run_discussion(
    question_text: str,
    config: AppConfig,
    providers: dict[str, AIProvider],
    max_rounds: int,
    output_dir: Path,
    use_cache: bool,
    stream: bool,
) -> Transcript:
    """Run one discussion session and return its transcript."""
    cache = ResponseCache.from_config(config.cache) if use_cache and config.cache.enabled else None
    sweeper = asyncio.create_task(cache.run_sweeper(config.cache.sweep_interval_sec)) if cache else None
    manager = SessionManager(config, providers, cache=cache, max_rounds=max_rounds, stream=stream)
    names = {role: persona.name for role, persona in config.personas.items()}

    console.print(f"\n[bold cyan]AI Duet[/bold cyan] — {names['persona_a']} vs {names['persona_b']}, up to {max_rounds} rounds")
    console.print(f"Judge: {names['judge']} | Synthesizer: {names['synthesis']}")
    console.print(f"Question: [italic]{question_text[:80]}{'...' if len(question_text) > 80 else ''}[/italic]\n")

    start = time.monotonic()
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:
            task_id = progress.add_task(f"{names['persona_a']} is thinking...", total=None)

            def on_turn(turn: Turn) -> None:
                if turn.speaker in ("persona_a", "persona_b"):
                    progress.print(f"[green]OK[/green] {names[turn.speaker]} finished round {turn.round_number}")
                    nxt = "persona_b" if turn.speaker == "persona_a" else "judge"
                    progress.update(task_id, description=f"{names[nxt]} is thinking...")

            def on_verdict(verdict: ConsensusVerdict) -> None:
                progress.print(
                    f"[cyan]Verdict[/cyan] confidence {verdict.confidence:.0f}, "
                    f"action {verdict.recommended_action} ({verdict.source})"
                )
                progress.update(task_id, description="Deciding next step...")

            def on_stream(turn: Turn) -> None:
                label = names.get(turn.speaker, turn.speaker)
                progress.update(task_id, description=f"{label} is writing... ({len(turn.content)} chars)")

            handle = manager.start_session(question_text, on_turn=on_turn, on_verdict=on_verdict, on_stream=on_stream)
            try:
                transcript = await handle.wait()
            except asyncio.CancelledError:
                manager.cancel(handle)
                await asyncio.wait({handle.task})
                _report(handle.transcript, names, cache, output_dir, time.monotonic() - start)
                raise
    finally:
        if sweeper is not None:
            sweeper.cancel()

    _report(transcript, names, cache, output_dir, time.monotonic() - start)
    return transcript


@click.command()
@click.argument("question", required=False)
@click.option("--file", "question_file", type=click.Path(exists=True), help="Read question from a text/markdown file")
@click.option("--max-rounds", default=None, type=int, help="Hard cap on discussion rounds (default: from config)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--no-cache", is_flag=True, default=False, help="Disable the response cache")
@click.option("--stream", is_flag=True, default=False, help="Stream model replies as they are generated")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(
    question: str | None,
    question_file: str | None,
    max_rounds: int | None,
    output_path: str | None,
    no_cache: bool,
    stream: bool,
    skip_health_check: bool,
    verbose: bool,
) -> None:
    """AI Duet -- two model personas discuss a question until they agree.

    \b
    Examples:
      ai-duet "How do I cache API responses in FastAPI?"
      ai-duet "REST or GraphQL for a mobile backend?" --max-rounds 6
      ai-duet --file question.md --stream
    """
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    if question_file:
        question_text = Path(question_file).read_text(encoding="utf-8").strip()
    elif question:
        question_text = question.strip()
    else:
        console.print("[bold red]Error:[/bold red] Provide a QUESTION argument or --file.")
        sys.exit(1)

    if not question_text:
        console.print("[bold red]Error:[/bold red] The question is empty.")
        sys.exit(1)

    effective_rounds = max_rounds if max_rounds is not None else config.defaults.max_rounds
    if effective_rounds < 1:
        console.print("[bold red]Error:[/bold red] --max-rounds must be at least 1.")
        sys.exit(1)
    effective_output = Path(output_path) if output_path else config.defaults.output_dir

    missing = config.missing_models()
    if missing:
        console.print(
            f"[bold red]Error:[/bold red] No API key for model(s) used by personas: {', '.join(missing)}. "
            "Check API keys in .env."
        )
        sys.exit(1)

    providers = _build_providers(config)
    unbuilt = sorted({p.model for p in config.personas.values()} - set(providers))
    if unbuilt:
        console.print(f"[bold red]Error:[/bold red] Could not set up provider(s): {', '.join(unbuilt)}")
        sys.exit(1)

    if not skip_health_check:
        _check_providers(providers, config.personas)

    try:
        transcript = asyncio.run(
            _run_discussion(
                question_text=question_text,
                config=config,
                providers=providers,
                max_rounds=effective_rounds,
                output_dir=effective_output,
                use_cache=not no_cache,
                stream=stream or config.defaults.stream,
            )
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Discussion cancelled.[/yellow]")
        sys.exit(130)

    if transcript.error:
        sys.exit(1)


if __name__ == "__main__":
    main()
