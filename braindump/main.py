"""
Brain Dump Analyzer - CLI Entry Point
--------------------------------------
Exposes Typer commands for the analysis pipeline and the completion client.

Usage:
    python -m braindump.main analyze notes.md                    # Analyse a file
    python -m braindump.main analyze notes.md -f spec.txt -t talk.txt
    cat notes.md | python -m braindump.main analyze - --json     # JSON to stdout
    python -m braindump.main probe --live                        # Check the backend
    python -m braindump.main stream "Explain rate limiting"      # Streamed completion
"""
from __future__ import annotations

import sys

# Windows cp1252 terminal fix: force UTF-8 so pasted notes with emoji do not
# crash the Rich console renderer.
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

import asyncio
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from braindump.analysis.orchestrator import AnalysisOrchestrator
from braindump.completion.client import CompletionClient, CompletionOptions
from braindump.config import Settings, load_settings
from braindump.errors import CompletionError, ConfigError, EmptyInputError
from braindump.schemas import AnalysisResult, Document, SourceDocument, SourceKind
from braindump.utils.helpers import dumps_json, normalise_input, read_text, save_json, truncate_text
from braindump.utils.logger import setup_logger

app = typer.Typer(
    name="braindump",
    help="Brain Dump Analyzer - turn unstructured notes into summaries, topics and outlines",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)


# --- Helpers ------------------------------------------------------------------

def _settings(config: Optional[str]) -> Settings:
    try:
        settings = load_settings(config)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(1)
    setup_logger(settings.logging.level, settings.logging.file)
    return settings


def _auxiliary_sources(files: list[str], transcripts: list[str]) -> list[SourceDocument]:
    sources: list[SourceDocument] = []
    for kind, paths in ((SourceKind.FILE, files), (SourceKind.LINK, transcripts)):
        for path in paths:
            p = Path(path)
            if not p.is_file():
                err_console.print(f"[red]Not a file:[/red] {path}")
                raise typer.Exit(1)
            sources.append(
                SourceDocument(
                    id=f"{kind.value}-{len(sources) + 1}",
                    title=p.name,
                    kind=kind,
                    text=read_text(p),
                )
            )
    return sources


# --- Commands -----------------------------------------------------------------

@app.command()
def analyze(
    path: str = typer.Argument(..., help="Text file with the main notes, or '-' for stdin"),
    files: list[str] = typer.Option(
        [], "--file", "-f", help="Extracted file text to include (repeatable)"
    ),
    transcripts: list[str] = typer.Option(
        [], "--transcript", "-t", help="Video/page transcript to include (repeatable)"
    ),
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to config YAML (default: config/config.yaml)"
    ),
    json_out: bool = typer.Option(False, "--json", help="Print the result as JSON"),
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Also write the JSON result to this path"
    ),
) -> None:
    """
    Analyse notes plus optional auxiliary sources.

    \b
    Steps:
      1. Segment into titled sections
      2. Extract and merge topics across chunks
      3. Extract keywords
      4. Summarise (recursively for long input)
      5. Word / sentence / reading-time statistics
    """
    settings = _settings(config)

    if path == "-":
        raw_text = normalise_input(sys.stdin.read())
    elif Path(path).is_file():
        raw_text = read_text(path)
    else:
        err_console.print(f"[red]Not a file:[/red] {path}")
        raise typer.Exit(1)

    document = Document(raw_text=raw_text, auxiliary_sources=_auxiliary_sources(files, transcripts))

    if not settings.completion.api_key:
        err_console.print(
            "[yellow]No API key configured (BRAINDUMP_API_KEY) -- "
            "running heuristic analysis only[/yellow]"
        )

    try:
        result = asyncio.run(_analyze_async(document, settings, show_progress=not json_out))
    except EmptyInputError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    if output:
        save_json(result.to_dict(), output)
        err_console.print(f"[green][OK] Result written to {output}[/green]")

    if json_out:
        typer.echo(dumps_json(result.to_dict()))
    else:
        _print_result(result)


@app.command()
def probe(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config YAML"),
    live: bool = typer.Option(False, "--live", help="Send a one-line completion request"),
) -> None:
    """Report whether the completion backend is usable."""
    settings = _settings(config)
    client = CompletionClient(settings.completion)
    available = client.is_available()

    table = Table(box=box.SIMPLE, show_header=False)
    table.add_row("Endpoint", settings.completion.base_url)
    table.add_row("Models", ", ".join(settings.completion.models))
    table.add_row("API key", "[green]set[/green]" if settings.completion.api_key else "[red]missing[/red]")
    table.add_row("Available", "[green]yes[/green]" if available else "[red]no[/red]")
    console.print(table)

    if not available:
        raise typer.Exit(1)
    if live:
        try:
            reply = asyncio.run(_probe_async(client))
        except CompletionError as exc:
            console.print(f"[red]Live probe failed:[/red] {type(exc).__name__}: {exc}")
            raise typer.Exit(1)
        console.print(f"[green][OK][/green] {client.current_model} replied: {truncate_text(reply, 80)}")


@app.command()
def stream(
    prompt: str = typer.Argument(..., help="Prompt to send"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config YAML"),
    max_tokens: int = typer.Option(500, "--max-tokens", help="Completion length cap"),
) -> None:
    """Stream a completion to the terminal as it is generated."""
    settings = _settings(config)
    try:
        asyncio.run(_stream_async(prompt, settings, max_tokens))
    except CompletionError as exc:
        console.print(f"\n[red]Completion failed:[/red] {type(exc).__name__}: {exc}")
        raise typer.Exit(1)


# --- Async bodies ---------------------------------------------------------------

async def _analyze_async(document: Document, settings: Settings, show_progress: bool) -> AnalysisResult:
    async with CompletionClient(settings.completion) as client:
        orchestrator = AnalysisOrchestrator(client, settings.analysis)
        if not show_progress:
            return await orchestrator.analyze(document)
        with err_console.status("[cyan]Analysing...[/cyan]") as status:
            return await orchestrator.analyze(
                document,
                progress_callback=lambda message: status.update(f"[cyan]{message}[/cyan]"),
            )


async def _probe_async(client: CompletionClient) -> str:
    async with client:
        return await client.complete("Reply with the single word OK.", CompletionOptions(max_tokens=5))


async def _stream_async(prompt: str, settings: Settings, max_tokens: int) -> None:
    def on_chunk(fragment: str, is_last: bool) -> None:
        if is_last:
            console.print()
        else:
            console.print(fragment, end="", markup=False, highlight=False)

    async with CompletionClient(settings.completion) as client:
        await client.complete_streaming(prompt, on_chunk, CompletionOptions(max_tokens=max_tokens))
    logger.debug("[CLI] Stream finished")


# --- Rendering ------------------------------------------------------------------

def _print_result(result: AnalysisResult) -> None:
    """Render an AnalysisResult to the terminal using Rich."""
    console.print()
    console.print(
        Panel(
            Markdown(result.summary),
            title="[bold green]Summary[/bold green]",
            border_style="green",
            expand=True,
        )
    )

    if result.keywords:
        console.print(f"[bold]Keywords:[/bold] {', '.join(result.keywords)}")

    sections = Table("ID", "Title", "Words", "Source", box=box.SIMPLE, header_style="bold dim")
    for s in result.sections:
        sections.add_row(s.id, truncate_text(s.title, 55), str(s.word_count), s.source_id or "-")
    console.print(sections)

    topics = Table("Topic", "Score", "Sections", "Description", box=box.SIMPLE, header_style="bold dim")
    for t in result.topics:
        topics.add_row(
            t.name,
            str(t.score),
            ", ".join(t.related_section_ids),
            truncate_text(t.description, 60),
        )
    console.print(topics)

    st = result.stats
    info = result.processing_info
    console.print(
        f"[dim]"
        f"words={st.word_count:,}  sentences={st.sentence_count:,}  "
        f"reading={st.reading_time_minutes} min  sources={st.source_count}  |  "
        f"mode={info.processing_method.value}  time={info.processing_time_ms / 1000:.1f}s"
        f"{'  degraded=' + ','.join(info.degraded_stages) if info.degraded_stages else ''}"
        f"[/dim]\n"
    )


if __name__ == "__main__":
    app()
