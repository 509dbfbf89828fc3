# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Display Module

Rich UI components for deployment summaries, teardown reports and status.
"""

from typing import Dict, Iterable, Mapping, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .exceptions import PSDeployError
from .models import (
    ROLES,
    BuildReport,
    HealthState,
    Role,
    ServiceInstance,
    StackOutputs,
    TeardownReport,
    TeardownStatus,
)

console = Console()

_TEARDOWN_STYLES = {
    TeardownStatus.DELETED: ("✓ Deleted", "green"),
    TeardownStatus.SKIPPED: ("- Skipped", "dim"),
    TeardownStatus.FAILED: ("✗ Failed", "red"),
}

_HEALTH_STYLES = {
    HealthState.HEALTHY: "green",
    HealthState.INITIAL: "yellow",
    HealthState.UNKNOWN: "dim",
    HealthState.UNHEALTHY: "red",
    HealthState.TIMED_OUT: "yellow",
}


def show_error(error: PSDeployError):
    """
    Print a stage-tagged error and its remediation

    Args:
        error: Orchestrator error
    """
    console.print(f"[red]✗ {escape(str(error))}[/red]")
    last_event = getattr(error, "last_event", "")
    if last_event:
        console.print(f"[red]  Last stack event: {escape(last_event)}[/red]")
    if error.remediation:
        console.print(f"[yellow]  {error.remediation}[/yellow]")


def create_images_table(
    image_ids: Mapping[Role, str], report: Optional[BuildReport] = None
) -> Table:
    """
    Create per-role image table

    Args:
        image_ids: Image id per role
        report: Build report, when images were built in this run

    Returns:
        Rich Table object
    """
    table = Table(title="Images", show_header=True, header_style="bold cyan")
    table.add_column("Role", style="cyan")
    table.add_column("Image ID")
    table.add_column("Status")

    errors = report.errors if report else {}
    for role in ROLES:
        if role in errors:
            message = escape(str(errors[role]))
            table.add_row(role.value, "-", f"✗ {message}", style="red")
        elif image_ids.get(role):
            table.add_row(role.value, image_ids[role], "✓ Ready", style="green")
        else:
            table.add_row(role.value, "-", "Missing", style="yellow")
    return table


def create_instances_table(instances: Iterable[ServiceInstance]) -> Table:
    """
    Create service instance table

    Args:
        instances: Service instances from bring-up

    Returns:
        Rich Table object
    """
    table = Table(title="Service Instances", show_header=True, header_style="bold cyan")
    table.add_column("Role", style="cyan")
    table.add_column("Instance ID")
    table.add_column("Address")
    table.add_column("Health")
    table.add_column("Detail", style="dim")

    for instance in instances:
        style = _HEALTH_STYLES.get(instance.health_state, "")
        table.add_row(
            instance.role.value,
            instance.instance_id,
            instance.address or "-",
            f"[{style}]{instance.health_state.value}[/{style}]",
            escape(instance.detail),
        )
    return table


def create_teardown_table(report: TeardownReport, title: str = "Cleanup") -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Action", style="cyan")
    table.add_column("Resource")
    table.add_column("Result", width=12)
    table.add_column("Detail", style="dim")

    for step in report.steps:
        label, style = _TEARDOWN_STYLES[step.status]
        table.add_row(
            step.action, step.resource, label, escape(step.detail), style=style
        )
    return table


def create_outputs_table(outputs: StackOutputs) -> Table:
    """Key stack outputs as a borderless two-column table"""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Output", style="cyan bold")
    table.add_column("Value")

    rows = [
        ("CloudFront Domain", outputs.cloudfront_domain),
        ("Cognito Domain", outputs.auth_domain_url),
        ("Cognito Client ID", outputs.client_id),
        ("Callback URL", outputs.callback_url),
    ]
    rows.extend(outputs.websocket_endpoints.items())
    rows.extend(outputs.load_balancer_dns_names.items())

    for name, value in rows:
        if value:
            table.add_row(name, value)
    return table


def show_teardown_report(report: TeardownReport):
    """
    Show cleanup results and any unresolved items

    Args:
        report: Teardown report
    """
    console.print()
    console.print(create_teardown_table(report))
    console.print()

    if report.success:
        console.rule("[bold green]Cleanup Complete", style="green")
        if not report.changed:
            console.print("[dim]Nothing to clean up[/dim]")
        return

    console.rule("[bold yellow]Cleanup Incomplete", style="yellow")
    console.print("[bold red]Unresolved:[/bold red]")
    for step in report.unresolved:
        console.print(f"  • {step.action} {step.resource}: {step.detail}", style="red")
    console.print()


def show_vpc_report(report) -> None:
    table = Table(
        title=f"VPC {report.vpc_id} Dependencies",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Resource Type", style="cyan")
    table.add_column("Count", justify="right", width=8)
    table.add_column("IDs")

    for resource_type, ids in report.blocking.items():
        style = "red" if ids else "green"
        table.add_row(resource_type, str(len(ids)), ", ".join(ids) or "-", style=style)

    console.print(table)
    for resource_type, error in report.errors.items():
        console.print(f"[yellow]⚠ Could not check {resource_type}: {error}[/yellow]")

    if report.clear:
        console.print(f"[green]✓ VPC {report.vpc_id} has no blocking dependencies[/green]")
    else:
        console.print(
            f"[red]✗ VPC {report.vpc_id} has {sum(len(i) for i in report.blocking.values())} "
            "blocking resource(s)[/red]"
        )


def show_deployment_summary(summary):
    """
    Show final summary after a deployment run

    Args:
        summary: RunSummary from the orchestrator
    """
    console.print()
    if summary.cancelled:
        console.rule("[bold yellow]Deployment Cancelled", style="yellow")
        return

    console.rule("[bold green]Deployment Complete", style="green")
    console.print()

    overview = Table(show_header=False, box=None, padding=(0, 2))
    overview.add_column("Metric", style="cyan bold")
    overview.add_column("Value")
    overview.add_row("Stack", summary.identity.stack_name)
    overview.add_row("Region", summary.identity.region)
    if summary.deployment:
        status = summary.deployment.status
        if summary.deployment.no_changes:
            status = "No changes (stack already up to date)"
        overview.add_row("Stack Status", status)
    overview.add_row("Image Source", summary.image_source)
    if summary.templates_bucket:
        overview.add_row("Templates Bucket", summary.templates_bucket)
    if summary.post_deploy:
        secret = (
            "retrieved"
            if summary.post_deploy.client_secret_retrieved
            else "manual retrieval required"
        )
        overview.add_row("Client Secret", secret)

    console.print(Panel(overview, title="Summary", border_style="green"))
    console.print(create_images_table(summary.image_ids, summary.build_report))

    outputs = summary.outputs
    if len(outputs):
        console.print(Panel(create_outputs_table(outputs), title="Endpoints"))

    if summary.instances:
        console.print(create_instances_table(summary.instances))

    warnings = summary.warnings
    if warnings:
        console.print()
        console.print("[bold yellow]Warnings:[/bold yellow]")
        for warning in warnings:
            console.print(f"  • {warning}", style="yellow")
    console.print()


def show_status(
    stack_name: str,
    stack_status: Optional[str],
    deployment_info: Optional[Dict],
    image_ids: Mapping[Role, str],
):
    """
    Show persisted records next to the live stack status

    Args:
        stack_name: Stack name
        stack_status: Current stack status, None when the stack does not exist
        deployment_info: Parsed deployment-info.json, if present
        image_ids: Image ids from ami-ids.json
    """
    status_table = Table(show_header=False, box=None, padding=(0, 2))
    status_table.add_column("Field", style="cyan bold")
    status_table.add_column("Value")
    status_table.add_row("Stack", stack_name)
    status_table.add_row("Stack Status", stack_status or "[dim]not deployed[/dim]")

    if deployment_info:
        status_table.add_row("Deployed", deployment_info.get("deployment_date", "-"))
        status_table.add_row("Templates Bucket", deployment_info.get("s3_bucket") or "-")
        outputs = deployment_info.get("outputs") or {}
        if outputs.get("cloudfront_domain"):
            status_table.add_row("CloudFront Domain", outputs["cloudfront_domain"])
    else:
        status_table.add_row("Records", "[dim]no deployment-info.json[/dim]")

    border = "green" if stack_status and stack_status.endswith("_COMPLETE") else "yellow"
    console.print(Panel(status_table, title="Deployment Status", border_style=border))

    if image_ids:
        console.print(create_images_table(image_ids))

    instances = (deployment_info or {}).get("instances") or []
    if instances:
        table = Table(title="Recorded Instances", show_header=True, header_style="bold cyan")
        table.add_column("Role", style="cyan")
        table.add_column("Instance ID")
        table.add_column("Health")
        for instance in instances:
            table.add_row(
                instance.get("role", ""),
                instance.get("instance_id", ""),
                instance.get("health", ""),
            )
        console.print(table)
