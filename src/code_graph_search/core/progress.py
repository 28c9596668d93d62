"""Progress events for ingestion and embedding, plus a console reporter.

The pipeline reports progress through an ordinary callable. Hosts that run
the pipeline in an isolated context marshal the events themselves; the
``ConsoleProgressReporter`` below is the in-process default. It prints with
plain ``console.print()`` calls instead of Rich live displays, since those
spawn background threads and Kuzu is not thread-safe.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from rich.console import Console


@dataclass
class PipelineProgress:
    """Structural load progress event."""

    phase: str  # loading, complete, error
    percent: int
    message: str
    stats: dict[str, Any] = field(default_factory=dict)


@dataclass
class EmbeddingProgress:
    """Embedding phase progress event."""

    phase: str  # loading-model, embedding, indexing, ready, error
    percent: int
    nodes_processed: int = 0
    total_nodes: int = 0
    error: str | None = None

    @property
    def message(self) -> str:
        if self.phase == "error":
            return f"Embedding failed: {self.error}"
        if self.phase == "embedding":
            return f"Embedding nodes {self.nodes_processed:,}/{self.total_nodes:,}"
        return self.phase.replace("-", " ").capitalize()


ProgressCallback = Callable[[PipelineProgress], Any]
EmbeddingProgressCallback = Callable[[EmbeddingProgress], Any]


class ConsoleProgressReporter:
    """Print progress events as phase lines and an inline progress bar.

    Example:
        reporter = ConsoleProgressReporter(Console())
        await pipeline.load_graph(graph, contents, on_progress=reporter)
        await pipeline.start_embedding_pipeline(on_progress=reporter)
    """

    def __init__(self, console: Console | None = None, width: int = 40):
        """Initialize reporter.

        Args:
            console: Rich Console instance for formatted output
            width: Width of the progress bar in characters
        """
        self.console = console or Console(stderr=True)
        self.width = width
        self._phase: str | None = None
        self._phase_start_time: float | None = None

    def __call__(self, event: PipelineProgress | EmbeddingProgress) -> None:
        if event.phase != self._phase:
            self._start_phase(event.phase)

        if event.phase == "error":
            self.console.print(f"  [red]✗[/red] {event.message}")
        elif event.percent >= 100 or event.phase in ("complete", "ready"):
            self.console.print(f"  [green]✓[/green] {event.message}")
        else:
            self.console.print(f"  {self._bar(event.percent)} {event.message}")

    def _start_phase(self, phase: str) -> None:
        if self._phase_start_time is not None:
            elapsed = time.time() - self._phase_start_time
            self.console.print(f"[dim]  (completed in {elapsed:.1f}s)[/dim]")

        self._phase = phase
        self._phase_start_time = time.time()
        self.console.print(f"\n[cyan]{phase}[/cyan]")

    def _bar(self, percent: int) -> str:
        percent = max(0, min(100, percent))
        filled_width = int(percent / 100 * self.width)
        filled = "━" * filled_width
        empty = " " * (self.width - filled_width)
        return f"{filled}{empty} {percent:3d}%"
