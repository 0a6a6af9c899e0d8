"""Rich console, Nord theme and the small set of print helpers used everywhere."""

import shutil
import time
from typing import Any, Callable, Dict, List

import pyfiglet
from rich import box
from rich.align import Align
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from ubuntu_harden import __version__

APP_NAME: str = "Ubuntu Harden"


# ----------------------------------------------------------------
# Nord-Themed Colors and Theme Setup
# ----------------------------------------------------------------
class NordColors:
    """Nord color palette definitions for consistent UI styling."""

    POLAR_NIGHT_3: str = "#434C5E"
    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"
    RED: str = "#BF616A"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"

    @classmethod
    def get_frost_gradient(cls, steps: int = 4) -> List[str]:
        """Returns a gradient using the frost color palette."""
        frosts = [cls.FROST_1, cls.FROST_2, cls.FROST_3, cls.FROST_4]
        return frosts[: max(1, min(steps, len(frosts)))]


nord_theme = Theme(
    {
        "banner": f"bold {NordColors.FROST_2}",
        "header": f"bold {NordColors.FROST_2}",
        "info": NordColors.GREEN,
        "warning": NordColors.YELLOW,
        "error": NordColors.RED,
        "debug": NordColors.POLAR_NIGHT_3,
        "success": NordColors.GREEN,
    }
)

console = Console(theme=nord_theme)


# ----------------------------------------------------------------
# UI Helper Functions
# ----------------------------------------------------------------
def create_header(title: str = APP_NAME) -> Panel:
    """
    Generate an ASCII art header with a frost gradient using Pyfiglet.
    The banner is built line-by-line into a Rich Text object to avoid stray markup tokens.
    """
    term_width, _ = shutil.get_terminal_size((80, 24))
    fonts: List[str] = ["slant", "small", "mini"]
    if term_width < 60:
        fonts = fonts[1:]

    ascii_art = ""
    for font in fonts:
        try:
            fig = pyfiglet.Figlet(font=font, width=min(term_width - 10, 120))
            ascii_art = fig.renderText(title)
        except pyfiglet.FigletError:
            continue
        if ascii_art.strip():
            break

    ascii_lines = [line for line in ascii_art.splitlines() if line.strip()]
    colors = NordColors.get_frost_gradient(len(ascii_lines))
    combined_text = Text()
    for i, line in enumerate(ascii_lines):
        combined_text.append(Text(line, style=f"bold {colors[i % len(colors)]}"))
        if i < len(ascii_lines) - 1:
            combined_text.append("\n")

    return Panel(
        Align.center(combined_text),
        border_style=NordColors.FROST_1,
        padding=(1, 2),
        title=Text(f"{APP_NAME} v{__version__}", style=f"bold {NordColors.SNOW_STORM_2}"),
        title_align="right",
        subtitle=Text("Server Hardening Tool", style=f"bold {NordColors.SNOW_STORM_1}"),
        subtitle_align="center",
        box=box.ROUNDED,
    )


def print_message(text: str, style: str = NordColors.FROST_2, prefix: str = "•") -> None:
    """Print a styled message with a prefix."""
    console.print(f"[{style}]{prefix} {escape(text)}[/{style}]")


def print_success(message: str) -> None:
    print_message(message, NordColors.GREEN, "✓")


def print_warning(message: str) -> None:
    print_message(message, NordColors.YELLOW, "⚠")


def print_error(message: str) -> None:
    print_message(message, NordColors.RED, "✗")


def print_section(title: str) -> None:
    """Print a section header."""
    console.print()
    console.print(f"[bold {NordColors.FROST_3}]{title}[/]")
    console.print(f"[{NordColors.FROST_3}]{'─' * len(title)}[/]")


def print_status_report(status: Dict[str, Dict[str, str]]) -> None:
    """Print a status report table for all hardening steps."""
    table = Table(title="Hardening Status Report", style="banner", box=box.ROUNDED)
    table.add_column("Step", style="header")
    table.add_column("Status", style="info")
    table.add_column("Message", style="info")

    for key, data in status.items():
        status_color = {
            "pending": "debug",
            "skipped": "debug",
            "in_progress": "warning",
            "success": "success",
            "failed": "error",
        }.get(data["status"].lower(), "info")
        table.add_row(
            key.replace("_", " ").title(),
            f"[{status_color}]{data['status'].upper()}[/{status_color}]",
            escape(data["message"]),
        )

    console.print(
        Panel(
            table,
            title="[banner]Ubuntu Hardening Status[/banner]",
            border_style=NordColors.FROST_3,
            box=box.ROUNDED,
        )
    )


def run_with_progress(description: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a function under a transient spinner and report the elapsed time."""
    with Progress(
        SpinnerColumn(style=f"bold {NordColors.FROST_1}"),
        TextColumn("{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task(description, total=None)
        start = time.time()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            console.print(f"[error]✗ {description} failed in {time.time() - start:.2f}s: {escape(str(e))}[/error]")
            raise
    console.print(f"[success]✓ {description} completed in {time.time() - start:.2f}s[/success]")
    return result

