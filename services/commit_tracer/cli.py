#!/usr/bin/env python3
"""
Commit Tracer CLI Tool

Traces GitLab commits to their merge requests, issues and epics and
renders the resulting chains in the terminal.
"""

import asyncio
import json
import logging
import sys
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.progress import Progress, SpinnerColumn, TextColumn

from config.settings import settings
from shared.gitlab_client import GitLabClient
from shared.models import BatchTraceResult, CommitChain
from services.commit_tracer.tracer import CommitTracer, TracingError, TracingOptions, compute_chain_statistics

# Initialize Rich console for beautiful output
console = Console()


def create_client() -> GitLabClient:
    return GitLabClient.from_settings()


def display_chain(chain: CommitChain):
    """Display one commit chain."""
    console.print("\n")

    commit = chain.commit
    title = Text(f"🔗 Commit {commit.short_sha}", style="bold green")
    content = f"""
    📝 Title: {commit.title}
    👤 Author: {commit.author_name} <{commit.author_email}>
    📅 Committed: {commit.committed_date or 'N/A'}
    🔍 Found: {chain.summary()}
    ✅ Complete: {'yes' if chain.metadata.is_complete else 'no'}
    ⏱️ Duration: {chain.metadata.duration_ms:.0f}ms ({chain.metadata.api_call_count} API calls)
    """
    console.print(Panel(content, title=title, border_style="green"))

    if chain.merge_requests:
        table = Table(title="🔀 Merge Requests", show_header=True, header_style="bold magenta")
        table.add_column("MR", style="cyan", width=8)
        table.add_column("Title", style="white", width=40)
        table.add_column("State", style="yellow", width=10)
        table.add_column("Closes", style="blue")
        for link in chain.merge_requests:
            mr = link.merge_request
            table.add_row(
                f"!{mr.iid}",
                mr.title[:37] + '...' if len(mr.title) > 40 else mr.title,
                mr.state.value,
                ", ".join(f"#{issue.iid}" for issue in link.closes_issues) or "-",
            )
        console.print(table)

    if chain.issues:
        table = Table(title="📋 Issues", show_header=True, header_style="bold magenta")
        table.add_column("Issue", style="cyan", width=8)
        table.add_column("Title", style="white", width=40)
        table.add_column("Related MRs", style="yellow")
        table.add_column("Epic", style="blue")
        for link in chain.issues:
            table.add_row(
                f"#{link.issue.iid}",
                link.issue.title[:37] + '...' if len(link.issue.title) > 40 else link.issue.title,
                ", ".join(f"!{mr.iid}" for mr in link.related_merge_requests) or "-",
                f"&{link.epic.iid}" if link.epic else "-",
            )
        console.print(table)

    if chain.epics:
        table = Table(title="🎯 Epics", show_header=True, header_style="bold magenta")
        table.add_column("Epic", style="cyan", width=8)
        table.add_column("Title", style="white", width=40)
        table.add_column("Group", style="yellow")
        for epic in chain.epics:
            suffix = " (partial)" if epic.partial else ""
            table.add_row(f"&{epic.iid}", epic.title + suffix, str(epic.group_id))
        console.print(table)

    for warning in chain.metadata.warnings:
        console.print(f"[yellow]⚠️  {warning}[/yellow]")


def display_batch(result: BatchTraceResult):
    """Display a batch trace result as a summary table."""
    table = Table(title="📋 Traced Commits", show_header=True, header_style="bold magenta")
    table.add_column("Commit", style="cyan", width=10)
    table.add_column("Title", style="white", width=40)
    table.add_column("MRs", style="green", width=5)
    table.add_column("Issues", style="yellow", width=7)
    table.add_column("Epics", style="blue", width=6)
    table.add_column("Complete", style="red", width=9)

    for chain in result.chains:
        title = chain.commit.title
        table.add_row(
            chain.commit.short_sha,
            title[:37] + '...' if len(title) > 40 else title,
            str(len(chain.merge_requests)),
            str(len(chain.issues)),
            str(len(chain.epics)),
            "✅" if chain.metadata.is_complete else "❌",
        )
    console.print(table)

    for failure in result.failures:
        console.print(f"[red]❌ {failure.commit_sha[:8]}: {failure.error}[/red]")

    summary = result.summary
    stats = compute_chain_statistics(result.chains)
    console.print(Panel(
        f"""
    🔢 Commits: {summary.total_commits} ({summary.success_count} traced, {summary.failure_count} failed)
    🌐 API calls: {summary.total_api_calls}
    ⏱️ Duration: {summary.total_duration_ms:.0f}ms (avg {summary.avg_duration_ms:.0f}ms)
    📊 Completeness: {stats.completeness_score:.0f}%
    """,
        title="📈 Summary",
        border_style="blue",
    ))


@click.group()
@click.version_option(version="1.0.0")
def cli():
    """Commit Tracer CLI - Trace commits to merge requests, issues and epics."""
    logging.basicConfig(
        level=getattr(logging, settings.logging.level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@cli.command()
@click.argument('sha', type=str)
@click.option('--project', '-p', help='Project ID or path (default: GITLAB_PROJECT_ID)')
@click.option('--json', 'as_json', is_flag=True, help='Print the chain as JSON')
def trace(sha: str, project: Optional[str], as_json: bool):
    """Trace a single commit."""
    async def run():
        try:
            async with create_client() as client:
                tracer = CommitTracer(client, TracingOptions.from_settings())
                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    console=console,
                    transient=True,
                ) as progress:
                    task = progress.add_task(f"Tracing {sha[:8]}...", total=None)
                    tracer.options.on_progress = lambda step: progress.update(task, description=step.name)
                    chain = await tracer.trace_commit(sha, project)

            if as_json:
                click.echo(json.dumps(chain.model_dump(mode="json"), indent=2))
            else:
                display_chain(chain)

        except TracingError as e:
            console.print(f"[red]❌ Error: {str(e)}[/red]")
            for step in e.steps:
                marker = "✅" if step.success else "❌"
                console.print(f"[dim]{marker} {step.name}: {step.error or step.result}[/dim]")
            sys.exit(1)
        except Exception as e:
            console.print(f"[red]❌ Error: {str(e)}[/red]")
            sys.exit(1)

    asyncio.run(run())


@cli.command()
@click.option('--count', '-c', default=10, help='Number of recent commits to trace (default: 10)')
@click.option('--branch', '-b', help='Branch name (default: all branches)')
@click.option('--project', '-p', help='Project ID or path (default: GITLAB_PROJECT_ID)')
def recent(count: int, branch: Optional[str], project: Optional[str]):
    """Trace the most recent commits of a project."""
    async def run():
        try:
            async with create_client() as client:
                tracer = CommitTracer(client, TracingOptions.from_settings())
                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    console=console,
                    transient=True,
                ) as progress:
                    progress.add_task(f"Tracing {count} recent commits...", total=None)
                    result = await tracer.trace_recent_commits(count, project, branch)
            display_batch(result)

        except Exception as e:
            console.print(f"[red]❌ Error: {str(e)}[/red]")
            sys.exit(1)

    asyncio.run(run())


@cli.command()
def check():
    """Check the GitLab connection and rate-limit status."""
    async def run():
        try:
            async with create_client() as client:
                connected = await client.test_connection()
                stats = client.get_stats()

            if not connected:
                console.print(f"[red]❌ Could not authenticate against {client.base_url}[/red]")
                sys.exit(1)

            console.print(f"[green]✅ Connected to {client.base_url}[/green]")
            rate_limit = stats["rate_limit"]
            if rate_limit.limit is not None:
                console.print(
                    f"[dim]Rate limit: {rate_limit.remaining}/{rate_limit.limit} remaining, "
                    f"resets at {rate_limit.reset}[/dim]"
                )
            console.print(f"[dim]Requests made: {stats['request_count']}[/dim]")

        except Exception as e:
            console.print(f"[red]❌ Error: {str(e)}[/red]")
            sys.exit(1)

    asyncio.run(run())


if __name__ == "__main__":
    cli()
