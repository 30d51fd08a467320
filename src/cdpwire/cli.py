"""CLI module for cdpwire."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from cdpwire import __version__
from cdpwire.browser.browser import Browser
from cdpwire.browser.frame_tree import FrameTree
from cdpwire.browser.profile import ConnectionProfile
from cdpwire.browser.views import CDPWireError
from cdpwire.logging_config import setup_logging

console = Console()


def _configure_logging(verbose: bool) -> None:
    setup_logging(level=logging.DEBUG if verbose else None)


def _profile(cdp_url: Optional[str], timeout: Optional[int]) -> ConnectionProfile:
    profile = ConnectionProfile.from_env(cdp_url=cdp_url, protocol_timeout_ms=timeout)
    if not profile.cdp_url:
        raise click.UsageError("No CDP URL given: pass --cdp-url or set CDPWIRE_CDP_URL")
    return profile


def _render_frame_tree(frame_tree: FrameTree) -> Tree:
    main = frame_tree.main_frame
    if main is None:
        return Tree("[dim](no frames)[/dim]")
    root = Tree(f"[bold]{main.frame_id}[/bold] {main.url}")
    stack = [(main.frame_id, root)]
    while stack:
        frame_id, node = stack.pop()
        for child in frame_tree.child_frames(frame_id):
            stack.append((child.frame_id, node.add(f"{child.frame_id} {child.url}")))
    return root


@click.group()
@click.version_option(version=__version__, prog_name="cdpwire")
def cli():
    """cdpwire - inspect a running browser over the DevTools protocol."""
    pass


@cli.command()
@click.option("--cdp-url", default=None, help="ws:// endpoint or http://host:port (defaults to CDPWIRE_CDP_URL)")
@click.option("--timeout", type=int, default=None, help="Protocol timeout in milliseconds (0 disables)")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def targets(cdp_url: Optional[str], timeout: Optional[int], verbose: bool):
    """List the targets available once the initial attach has finished.

    Example:
        >>> cdpwire targets --cdp-url http://localhost:9222
    """
    _configure_logging(verbose)
    profile = _profile(cdp_url, timeout)

    async def execute():
        browser = await Browser.connect(profile)
        try:
            table = Table(title="Targets")
            table.add_column("Target ID", style="cyan", no_wrap=True)
            table.add_column("Type", style="magenta")
            table.add_column("URL")
            for target in browser.targets():
                table.add_row(target.target_id, target.type.value, target.url)
            console.print(table)
        finally:
            await browser.disconnect()

    try:
        asyncio.run(execute())
    except CDPWireError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument("target_id")
@click.option("--cdp-url", default=None, help="ws:// endpoint or http://host:port (defaults to CDPWIRE_CDP_URL)")
@click.option("--timeout", type=int, default=None, help="Protocol timeout in milliseconds (0 disables)")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def frames(target_id: str, cdp_url: Optional[str], timeout: Optional[int], verbose: bool):
    """Print the frame tree of one page target."""
    _configure_logging(verbose)
    profile = _profile(cdp_url, timeout)

    async def execute():
        browser = await Browser.connect(profile)
        try:
            target = await browser.wait_for_target(lambda t: t.target_id.startswith(target_id))
            frame_manager = browser.frame_manager(target.target_id)
            if frame_manager is None:
                console.print(f"[yellow]Target {target.target_id} is a {target.type.value}, not a page[/yellow]")
                return
            await frame_manager.initialize()
            console.print(_render_frame_tree(frame_manager.frame_tree))
        finally:
            await browser.disconnect()

    try:
        asyncio.run(execute())
    except CDPWireError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


def main():
    cli()


if __name__ == "__main__":
    main()
