#!/usr/bin/env python3
"""
Feed Monitor CLI Tool

Runs the feed monitor, triggers one-off polls and lists the monitored
projects.
"""

import asyncio
import logging
import sys
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn

from config.projects import MonitorConfigLoader
from config.settings import settings
from shared.events import CommitDetectedEvent, CommitProcessedEvent
from services.feed_monitor.main import MonitorService

# Initialize Rich console for beautiful output
console = Console()


def create_service(projects_file: Optional[str] = None) -> MonitorService:
    return MonitorService(config_loader=MonitorConfigLoader(projects_file))


def display_processed(events):
    """Display processed commits from a poll."""
    if not events:
        console.print(Panel("No new commits detected.", title="📋 Poll Results"))
        return

    table = Table(title="📋 Poll Results", show_header=True, header_style="bold magenta")
    table.add_column("Commit", style="cyan", width=10)
    table.add_column("Branch", style="green", width=12)
    table.add_column("Title", style="white", width=40)
    table.add_column("Result", style="yellow")

    for event in events:
        commit = event.commit.commit
        title = commit.title
        if event.success and event.chain is not None:
            result = f"✅ {event.chain.summary()}"
        else:
            result = f"❌ {event.error}"
        table.add_row(
            commit.sha[:8],
            commit.branch,
            title[:37] + '...' if len(title) > 40 else title,
            result,
        )
    console.print(table)


@click.group()
@click.version_option(version="1.0.0")
def cli():
    """Feed Monitor CLI - Watch GitLab branches and trace new commits."""
    logging.basicConfig(
        level=getattr(logging, settings.logging.level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@cli.command()
@click.option('--projects-file', '-f', help='Projects configuration file')
def run(projects_file: Optional[str]):
    """Run the monitor until interrupted."""
    async def main():
        try:
            service = create_service(projects_file)
            console.print("[green]🚀 Starting GitLab commit monitor...[/green]")
            await service.run_forever()
            console.print("[dim]🛑 Monitor stopped[/dim]")
        except Exception as e:
            console.print(f"[red]❌ Error: {str(e)}[/red]")
            sys.exit(1)

    asyncio.run(main())


@cli.command()
@click.argument('project_id', type=str)
@click.option('--projects-file', '-f', help='Projects configuration file')
def poll(project_id: str, projects_file: Optional[str]):
    """Poll one project once and trace everything it detects."""
    async def main():
        service = None
        try:
            service = create_service(projects_file)
            detected = service.monitor.events.subscribe()
            processed = service.processor.events.subscribe()

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task(f"Polling {project_id}...", total=None)
                count = await service.monitor.poll_project(project_id)
                progress.update(task, description=f"Tracing {count} commit(s)...")
                for event in detected.drain():
                    if isinstance(event, CommitDetectedEvent):
                        service.processor.enqueue(event.commit)
                await service.processor.wait_idle()

            events = [e for e in processed.drain() if isinstance(e, CommitProcessedEvent)]
            display_processed(events)

        except Exception as e:
            console.print(f"[red]❌ Error: {str(e)}[/red]")
            sys.exit(1)
        finally:
            if service is not None:
                await service.stop()

    asyncio.run(main())


@cli.command()
@click.option('--projects-file', '-f', help='Projects configuration file')
def projects(projects_file: Optional[str]):
    """List the monitored projects."""
    try:
        loader = MonitorConfigLoader(projects_file)
        config = loader.load()
    except ValueError as e:
        console.print(f"[red]❌ Error: {str(e)}[/red]")
        sys.exit(1)

    table = Table(title="📁 Monitored Projects", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Branches", style="green")
    table.add_column("Enabled", style="yellow")
    table.add_column("Excluded Authors", style="red")

    for project in config.projects:
        table.add_row(
            str(project.id),
            project.name,
            ", ".join(project.branches),
            "✅" if project.enabled else "❌",
            ", ".join(project.filters.exclude_authors) or "-",
        )
    console.print(table)
    console.print(
        f"[dim]Poll interval: {config.global_config.poll_interval_seconds}s, "
        f"max commits per poll: {config.global_config.max_commits_per_poll}[/dim]"
    )


if __name__ == "__main__":
    cli()
