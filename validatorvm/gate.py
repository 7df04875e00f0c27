"""Cost disclosure and confirmation before state-changing actions.

This is the only place the tool blocks on user input.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable

from rich.console import Console

from .cost import CostEstimate, format_usd
from .utils import log


@dataclass
class Disclosure:
    title: str
    affected: list[str] = field(default_factory=list)
    costs: list[tuple[str, Decimal]] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    fallback_rate: bool = False

    def add_estimate(self, label: str, estimate: CostEstimate) -> None:
        self.costs.append((label, estimate.total))
        self.fallback_rate = self.fallback_rate or estimate.fallback


class Gate:
    """Render a Disclosure and ask for a yes/no answer.

    :param ask: Prompt function, defaults to input()
    :param console: Rich console for the disclosure
    """

    def __init__(
        self,
        ask: Callable[[str], str] = input,
        console: Console | None = None,
    ):
        self.ask = ask
        self.console = console or Console()

    def render(self, disclosure: Disclosure) -> None:
        c = self.console
        c.print(f"[bold yellow]{disclosure.title}[/bold yellow]")
        if disclosure.affected:
            c.print("  [bold]Resources affected:[/bold]")
            for item in disclosure.affected:
                c.print(f"    - {item}")
        if disclosure.costs:
            c.print("  [bold]Estimated costs:[/bold]")
            width = max(len(label) for label, _ in disclosure.costs)
            for label, amount in disclosure.costs:
                c.print(f"    {label.ljust(width)}  [yellow]{format_usd(amount)}[/yellow]")
            if disclosure.fallback_rate:
                c.print("    [red](instance type not in price table, fallback rate used)[/red]")
        for note in disclosure.notes:
            c.print(f"  [cyan]{note}[/cyan]")

    def confirm(self, action: str, disclosure: Disclosure, force: bool = False) -> bool:
        """Ask whether to proceed with action.

        :param action: Question shown at the prompt, e.g. "Stop the instance?"
        :param disclosure: Freshly computed disclosure, rendered every call
        :param force: Skip the prompt and proceed
        """
        self.render(disclosure)
        if force:
            log("Force mode enabled, proceeding without confirmation...")
            return True

        try:
            answer = self.ask(f"{action} [y/N]: ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")
