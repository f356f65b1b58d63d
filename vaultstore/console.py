import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

APP_NAME = "vaultstore"
logger = logging.getLogger(APP_NAME)

console = Console(stderr=True)
# general rule: this logger is used for internal logs only.


def setup_logging(level: int = logging.INFO):
    """Send the vault's logs to the rich console. Safe to call more than once."""
    logger.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        logger.addHandler(
            RichHandler(
                level=logging.DEBUG,
                markup=False,
                show_path=False,
                console=console,
                log_time_format=r"[%X]",
            )
        )


pre_tag = rf"[cyan]\[{APP_NAME}][/cyan]"


def user_warning(*args, **kwargs):
    console.print(pre_tag, "[red]WARN[/]", *args, **kwargs)


def user_info(*args, **kwargs):
    """Use this to print info that we can reasonably expect the user will want to see.

    We use this instead of logger.info because these are more messages.
    And we want to include fancy rich formatting."""
    console.print(pre_tag, *args, **kwargs)


def decorate(x: str, desc: str):
    return f"[{desc}]{x}[/{desc}]"


def is_interactive_terminal():
    """Returns true if this program is running in an interactive terminal
    that we can reasonably expect a human to interact with."""
    return sys.__stdin__ is not None and sys.__stdin__.isatty()
