"""
Async execution utilities for CLI commands
"""

import asyncio
import signal
import sys
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def async_command(f: F) -> Callable[..., Any]:
    """
    Decorator to run async functions in CLI context with proper error handling
    """

    @wraps(f)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return asyncio.run(f(*args, **kwargs))  # type: ignore
        except KeyboardInterrupt:
            console = Console()
            console.print("\n[yellow]Operation interrupted by user[/yellow]")
            sys.exit(130)  # Standard exit code for SIGINT
        except (click.exceptions.Exit, click.ClickException, SystemExit):
            raise
        except Exception as e:
            console = Console()
            console.print(f"[red]Operation failed: {e}[/red]")
            sys.exit(1)

    return wrapper


class GracefulKiller:
    """
    Turn SIGINT / SIGTERM into an asyncio stop event for long-running services
    """

    def __init__(self, stop_event: Optional[asyncio.Event] = None) -> None:
        self.kill_now = False
        self.signal_name: Optional[str] = None
        self.stop_event = stop_event or asyncio.Event()
        self._loop = asyncio.get_running_loop()
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def _handle_signal(self, signum: int, frame: Any) -> None:
        """Handle shutdown signals"""
        self.kill_now = True
        self.signal_name = signal.Signals(signum).name
        # Wakes the loop even while it is blocked in select
        self._loop.call_soon_threadsafe(self.stop_event.set)

    def restore(self) -> None:
        """Reinstate the default signal handlers"""
        signal.signal(signal.SIGINT, signal.default_int_handler)
        signal.signal(signal.SIGTERM, signal.SIG_DFL)
