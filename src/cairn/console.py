"""Console output for cairn runs.

Prints one line per lifecycle event and a summary when an app exits.
Output goes to stderr through a rich Console so program stdout stays
clean. Only identities, events and error messages are printed, never
resource inputs or outputs, and error text is scrubbed of known secrets.
"""

from collections import Counter
from typing import Sequence

from rich.console import Console
from rich.table import Table
from rich.text import Text

from cairn.scope import ApplyResult
from cairn.secret import redact
from cairn.state import ResourceIdentity

console = Console(stderr=True, highlight=False)

EVENT_STYLES = {
    "create": ("+", "green"),
    "update": ("~", "yellow"),
    "delete": ("-", "red"),
    "read": ("=", "cyan"),
}


def report_event(
    identity: ResourceIdentity,
    event: str,
    success: bool,
    duration: float = 0.0,
    error: str = "",
) -> None:
    """Print a single lifecycle event.

    Example output:
        + create File(myapp/dev/config) (0.01s)
        ✗ update Database(myapp/dev/db-1): Cannot update region ...
    """
    line = Text()
    if success:
        symbol, style = EVENT_STYLES.get(event, ("•", "white"))
        line.append(f"{symbol} {event} ", style=style)
        line.append(str(identity))
        line.append(f" ({duration:.2f}s)", style="dim")
    else:
        line.append(f"✗ {event} ", style="bold red")
        line.append(str(identity))
        if error:
            line.append(f": {redact(error)}", style="red")
    console.print(line)


def print_summary(results: Sequence[ApplyResult]) -> None:
    """Print per-event counts and the list of failures."""
    if not results:
        return

    counts = Counter(r.event for r in results if r.success)
    failures = [r for r in results if not r.success]

    table = Table(title="SUMMARY", show_header=True, header_style="bold")
    table.add_column("event")
    table.add_column("count", justify="right")
    for event in ("create", "update", "delete", "read"):
        if counts[event]:
            table.add_row(event, str(counts[event]))
    if failures:
        table.add_row(Text("failed", style="red"), Text(str(len(failures)), style="red"))
    console.print(table)

    if failures:
        console.print(f"\nERRORS ({len(failures)}):", style="bold red")
        for failure in failures:
            console.print(f"  {failure.event} {failure.identity}: {redact(failure.error)}", markup=False)
