"""
Error handling utilities for CLI commands.
"""

import functools
import logging
import sys

from rich.console import Console

from mcp_aggregator.core.exceptions import AggregatorError

console = Console(stderr=True)


def handle_errors(func):
    """Decorator to handle common CLI errors."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            sys.exit(1)
        except AggregatorError as e:
            console.print(f"[red]Error: {e.message}[/red]")
            if e.error_code:
                console.print(f"[dim]Code: {e.error_code}[/dim]")
            sys.exit(1)
        except Exception as e:
            console.print(f"[red]Error: {e}[/red]")
            if logging.getLogger().isEnabledFor(logging.DEBUG):
                console.print_exception()
            else:
                console.print("[dim]Use --debug for more details[/dim]")
            sys.exit(1)

    return wrapper
