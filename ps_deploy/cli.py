# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
PS Deploy - Main Command Line Interface

Command-line tool for provisioning and tearing down the Pixel Streaming
infrastructure: component images, the nested stack and service instances.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Optional, Tuple

import click
from rich.console import Console

from . import __version__, display
from .cleanup import CleanupCoordinator, CleanupOptions, vpc_dependencies
from .config import DEFAULT_CONFIG_FILE, ConfigStore
from .exceptions import OrchestrationInterrupted, PSDeployError, TeardownPartialFailure
from .models import DeploymentIdentity
from .orchestrator import Orchestrator, RunOptions, interrupts_as_errors
from .records import ResultStore
from .stack_deployer import StackDeployer

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

console = Console()

EXIT_INTERRUPTED = 130


def config_option(f):
    return click.option(
        "--config",
        "config_path",
        default=DEFAULT_CONFIG_FILE,
        show_default=True,
        help="Deployment configuration file (JSON or YAML)",
    )(f)


def identity_options(f):
    f = click.option("--stack-name", help="Stack name (overrides the config file)")(f)
    f = click.option("--region", help="AWS region (optional)")(f)
    return f


def _resolve(
    config_path: str, region: Optional[str], stack_name: Optional[str]
) -> Tuple[ConfigStore, DeploymentIdentity]:
    config = ConfigStore(config_path)
    identity = config.resolve(region=region, stack_name=stack_name)
    console.print(
        f"[bold blue]Stack:[/bold blue] {identity.stack_name}  "
        f"[bold blue]Region:[/bold blue] {identity.region}"
    )
    return config, identity


@contextmanager
def _command_errors(action: str):
    """Map errors to exit codes: 1 for failures, 130 for interrupts"""
    try:
        yield
    except OrchestrationInterrupted as e:
        console.print(f"\n[yellow]⚠ {action} interrupted: {e.message}[/yellow]")
        console.print(f"[yellow]{e.remediation}[/yellow]")
        sys.exit(EXIT_INTERRUPTED)
    except KeyboardInterrupt:
        console.print(f"\n[yellow]⚠ {action} interrupted[/yellow]")
        sys.exit(EXIT_INTERRUPTED)
    except PSDeployError as e:
        logger.debug(f"{action} failed", exc_info=True)
        display.show_error(e)
        sys.exit(1)
    except Exception as e:
        logger.error(f"Error during {action.lower()}: {e}", exc_info=True)
        console.print(f"[red]✗ Error: {e}[/red]")
        sys.exit(1)


def _confirm_update(stack_name: str) -> bool:
    console.print(f"[yellow]⚠ Stack '{stack_name}' already exists[/yellow]")
    return click.confirm("Do you want to update the existing stack?", default=False)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """
    PS Deploy - Pixel Streaming infrastructure orchestrator

    This tool provides commands for:
    - Building component images (signalling, matchmaker, frontend)
    - Stack deployment with nested templates
    - Service instance bring-up and health checks
    - Cleanup of everything a deployment created
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.command()
@config_option
@identity_options
@click.option(
    "--skip-image-creation",
    is_flag=True,
    help="Use image ids from the config file (fallback images if incomplete)",
)
@click.option("--use-fallback-images", is_flag=True, help="Use the built-in fallback images")
@click.option("--force-update", is_flag=True, help="Update an existing stack without asking")
@click.option("--sequential-builds", is_flag=True, help="Build images one after another")
@click.option("--skip-instances", is_flag=True, help="Do not launch service instances")
@click.option(
    "--settle-seconds",
    type=int,
    help="Seconds to wait between instances running and target registration",
)
@click.option(
    "--stack-timeout",
    type=int,
    default=1800,
    show_default=True,
    help="Seconds to wait for the stack to converge",
)
def deploy(
    config_path: str,
    region: Optional[str],
    stack_name: Optional[str],
    skip_image_creation: bool,
    use_fallback_images: bool,
    force_update: bool,
    sequential_builds: bool,
    skip_instances: bool,
    settle_seconds: Optional[int],
    stack_timeout: int,
):
    """
    Deploy the complete Pixel Streaming infrastructure

    Builds component images, deploys the stack, runs the post-deploy steps
    and brings up one service instance per role.

    Examples:

      # Full deployment
      ps-deploy deploy

      # Re-deploy with previously built images, no prompt
      ps-deploy deploy --skip-image-creation --force-update

      # Quick deployment with fallback images
      ps-deploy deploy --use-fallback-images --skip-instances
    """
    with _command_errors("Deployment"):
        config, identity = _resolve(config_path, region, stack_name)
        options = RunOptions(
            skip_image_creation=skip_image_creation,
            use_fallback_images=use_fallback_images,
            force_update=force_update,
            parallel_builds=not sequential_builds,
            skip_instances=skip_instances,
            settle_seconds=settle_seconds,
            stack_timeout=stack_timeout,
        )
        orchestrator = Orchestrator(
            config, identity, console=console, confirm_update=_confirm_update
        )
        summary = orchestrator.run(options)
        display.show_deployment_summary(summary)


@cli.command(name="build-images")
@config_option
@identity_options
@click.option("--sequential-builds", is_flag=True, help="Build images one after another")
def build_images(
    config_path: str,
    region: Optional[str],
    stack_name: Optional[str],
    sequential_builds: bool,
):
    """
    Build the three component images and publish their ids

    Examples:

      ps-deploy build-images
      ps-deploy build-images --sequential-builds
    """
    with _command_errors("Image build"):
        config, identity = _resolve(config_path, region, stack_name)
        orchestrator = Orchestrator(config, identity, console=console)
        with interrupts_as_errors():
            image_ids, report, teardown = orchestrator.build_images(
                parallel=not sequential_builds
            )
        console.print(display.create_images_table(image_ids, report))
        console.print(display.create_teardown_table(teardown, title="Build Scaffolding"))
        console.print(f"\n[green]✓ Image ids published to {config.path}[/green]")


@cli.command(name="deploy-stack")
@config_option
@identity_options
@click.option(
    "--skip-image-creation",
    is_flag=True,
    help="Fall back to the built-in images if the config is incomplete",
)
@click.option("--use-fallback-images", is_flag=True, help="Use the built-in fallback images")
@click.option("--force-update", is_flag=True, help="Update an existing stack without asking")
@click.option(
    "--stack-timeout",
    type=int,
    default=1800,
    show_default=True,
    help="Seconds to wait for the stack to converge",
)
def deploy_stack(
    config_path: str,
    region: Optional[str],
    stack_name: Optional[str],
    skip_image_creation: bool,
    use_fallback_images: bool,
    force_update: bool,
    stack_timeout: int,
):
    """
    Deploy the stack using image ids from the config file

    Examples:

      ps-deploy deploy-stack
      ps-deploy deploy-stack --use-fallback-images --force-update
    """
    with _command_errors("Stack deployment"):
        config, identity = _resolve(config_path, region, stack_name)
        options = RunOptions(
            skip_image_creation=skip_image_creation,
            use_fallback_images=use_fallback_images,
            force_update=force_update,
            stack_timeout=stack_timeout,
        )
        orchestrator = Orchestrator(
            config, identity, console=console, confirm_update=_confirm_update
        )
        summary = orchestrator.run_stack(options)
        display.show_deployment_summary(summary)


@cli.command(name="deploy-instances")
@config_option
@identity_options
@click.option("--use-fallback-images", is_flag=True, help="Use the built-in fallback images")
@click.option(
    "--settle-seconds",
    type=int,
    help="Seconds to wait between instances running and target registration",
)
def deploy_instances(
    config_path: str,
    region: Optional[str],
    stack_name: Optional[str],
    use_fallback_images: bool,
    settle_seconds: Optional[int],
):
    """
    Launch one service instance per role against a deployed stack

    Unhealthy targets are reported as warnings; the command still succeeds.

    Examples:

      ps-deploy deploy-instances
      ps-deploy deploy-instances --settle-seconds 0
    """
    with _command_errors("Instance deployment"):
        config, identity = _resolve(config_path, region, stack_name)
        options = RunOptions(
            use_fallback_images=use_fallback_images, settle_seconds=settle_seconds
        )
        orchestrator = Orchestrator(config, identity, console=console)
        summary = orchestrator.run_instances(options)
        display.show_deployment_summary(summary)


@cli.command()
@config_option
@identity_options
@click.option("--delete-images", is_flag=True, help="Also deregister images and snapshots")
@click.option("--delete-keys", is_flag=True, help="Also delete the key pair and .pem file")
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
@click.option(
    "--stack-timeout",
    type=int,
    default=1800,
    show_default=True,
    help="Seconds to wait for stack deletion",
)
def cleanup(
    config_path: str,
    region: Optional[str],
    stack_name: Optional[str],
    delete_images: bool,
    delete_keys: bool,
    force: bool,
    stack_timeout: int,
):
    """
    Remove everything a deployment created

    ⚠️  WARNING: This permanently deletes the stack and its buckets.

    Every step is best-effort; running cleanup again is safe.

    Examples:

      # Interactive cleanup with confirmation
      ps-deploy cleanup

      # Remove images and keys too, no prompt
      ps-deploy cleanup --delete-images --delete-keys --force
    """
    with _command_errors("Cleanup"):
        config, identity = _resolve(config_path, region, stack_name)
        store = ResultStore(str(config.base_dir))

        console.print()
        console.print("[bold red]⚠️  WARNING: Deployment Cleanup[/bold red]")
        console.print("━" * 60)
        console.print(f"Stack: [cyan]{identity.stack_name}[/cyan]")
        console.print(f"Images: {'delete' if delete_images else 'keep'}")
        console.print(f"Key pair: {'delete' if delete_keys else 'keep'}")
        records = store.existing_records()
        if records:
            console.print(f"Records: {', '.join(path.name for path in records)}")
        console.print("━" * 60)
        console.print()

        if not force and not click.confirm(
            "Are you sure you want to clean up this deployment?", default=False
        ):
            console.print("[yellow]Cleanup cancelled[/yellow]")
            return

        coordinator = CleanupCoordinator(
            identity, store=store, key_dir=str(config.base_dir), console=console
        )
        with interrupts_as_errors():
            report = coordinator.teardown(
                CleanupOptions(
                    delete_images=delete_images,
                    delete_keys=delete_keys,
                    stack_timeout=stack_timeout,
                )
            )
        display.show_teardown_report(report)
        if not report.success:
            raise TeardownPartialFailure(
                f"Cleanup left {len(report.unresolved)} item(s) unresolved", report
            )


@cli.command()
@config_option
@identity_options
def status(config_path: str, region: Optional[str], stack_name: Optional[str]):
    """
    Show the recorded deployment and the live stack status

    Examples:

      ps-deploy status
    """
    with _command_errors("Status"):
        config, identity = _resolve(config_path, region, stack_name)
        store = ResultStore(str(config.base_dir))
        deployer = StackDeployer(region=identity.region)
        display.show_status(
            identity.stack_name,
            deployer.stack_status(identity.stack_name),
            store.read_deployment_info(),
            store.read_image_ids(),
        )


@cli.command(name="check-vpc")
@click.argument("vpc_id")
@click.option("--region", help="AWS region (optional)")
def check_vpc(vpc_id: str, region: Optional[str]):
    """
    List resources that block deletion of VPC_ID

    Examples:

      ps-deploy check-vpc vpc-0123456789abcdef0 --region us-west-2
    """
    with _command_errors("VPC check"):
        report = vpc_dependencies(vpc_id, region)
        display.show_vpc_report(report)


def main():
    """Main entry point"""
    cli()


if __name__ == "__main__":
    main()
