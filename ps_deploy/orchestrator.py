# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Orchestrator Module

Drives a full deployment: images, stack, post-deploy steps, service
instances, then result records. Each stage can also be run on its own.
"""

import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError
from rich.console import Console

from .build_env import (
    BuildEnvironmentManager,
    ensure_key_pair,
    error_code,
    transient_environment,
)
from .config import ConfigStore
from .distribution import ArtifactChannel
from .exceptions import (
    DeploymentError,
    MissingImagesError,
    OrchestrationInterrupted,
    ProvisioningError,
)
from .image_builder import COMPONENT_NAMES, ImageBuilder
from .instances import InstanceBringUp
from .models import (
    FALLBACK_IMAGE_IDS,
    ROLES,
    BuildReport,
    DeploymentIdentity,
    DeploymentResult,
    PostDeployResult,
    Role,
    ServiceInstance,
    StackDeploymentRequest,
    StackOutputs,
    TeardownReport,
)
from .post_deploy import PostDeploySteps
from .records import ResultStore
from .stack_deployer import StackDeployer, build_parameters

logger = logging.getLogger(__name__)


@contextmanager
def interrupts_as_errors(signals=(signal.SIGINT, signal.SIGTERM)) -> Iterator[None]:
    """
    Raise OrchestrationInterrupted when one of signals arrives

    Only installs handlers on the main thread; previous handlers are
    restored on exit.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        raise OrchestrationInterrupted(f"Received {signal.Signals(signum).name}")

    previous = {signum: signal.signal(signum, handler) for signum in signals}
    try:
        yield
    finally:
        for signum, old_handler in previous.items():
            signal.signal(signum, old_handler)


@dataclass
class RunOptions:
    """Flags for a deployment run"""

    skip_image_creation: bool = False
    use_fallback_images: bool = False
    force_update: bool = False
    parallel_builds: bool = True
    skip_instances: bool = False
    settle_seconds: Optional[int] = None
    stack_timeout: int = 1800
    stack_interval: int = 15


@dataclass
class RunSummary:
    """What a run produced, for records and the final display"""

    identity: DeploymentIdentity
    image_ids: Dict[Role, str] = field(default_factory=dict)
    image_source: str = ""
    build_report: Optional[BuildReport] = None
    build_teardown: Optional[TeardownReport] = None
    deployment: Optional[DeploymentResult] = None
    templates_bucket: str = ""
    post_deploy: Optional[PostDeployResult] = None
    instances: List[ServiceInstance] = field(default_factory=list)
    cancelled: bool = False

    @property
    def outputs(self) -> StackOutputs:
        return self.deployment.stack_outputs() if self.deployment else StackOutputs()

    @property
    def warnings(self) -> List[str]:
        warnings = list(self.post_deploy.warnings) if self.post_deploy else []
        warnings.extend(
            f"{instance.role.value} {instance.instance_id}: {instance.detail}"
            for instance in self.instances
            if instance.is_soft_failure or (instance.detail and not instance.registered)
        )
        return warnings


class Orchestrator:
    """Runs the deployment stages in order"""

    def __init__(
        self,
        config: ConfigStore,
        identity: DeploymentIdentity,
        session: Optional[boto3.Session] = None,
        store: Optional[ResultStore] = None,
        console: Optional[Console] = None,
        confirm_update: Optional[Callable[[str], bool]] = None,
    ):
        """
        Initialize orchestrator

        Args:
            config: Configuration store
            identity: Resolved deployment identity
            session: boto3 session (optional)
            store: Result records (defaults to the config file's directory)
            console: rich console for progress display (optional)
            confirm_update: Asked before updating an existing stack; the
                update is cancelled when it returns False
        """
        self.config = config
        self.identity = identity
        self.session = session or boto3.Session(region_name=identity.region)
        self.store = store or ResultStore(str(config.base_dir))
        self.console = console
        self.confirm_update = confirm_update

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def build_images(
        self, parallel: bool = True
    ) -> Tuple[Dict[Role, str], BuildReport, TeardownReport]:
        """
        Build one image per role inside a transient build environment

        Image ids are published to the config only when every role succeeded.

        Returns:
            Tuple of (image ids, build report, scaffolding teardown report)
        """
        settings = self.config.build_settings()
        builder = ImageBuilder(self.identity, settings, session=self.session)
        targets = builder.targets(ROLES)
        builder.validate(targets)

        manager = BuildEnvironmentManager(
            self.identity, vpc_id=settings.vpc_id, session=self.session
        )
        channel = ArtifactChannel(self.identity.region, session=self.session)

        logger.info("Creating AMIs for Pixel Streaming components...")
        with transient_environment(manager) as env:
            reference = channel.publish(settings.source_tree, env)
            report = builder.build_all(targets, env, reference, parallel=parallel)
        teardown = manager.last_teardown_report or TeardownReport()

        image_ids = report.image_ids
        if image_ids:
            self.store.write_image_ids(self.identity, image_ids)

        if not report.success:
            failures = "; ".join(
                f"{COMPONENT_NAMES[role]}: {error}" for role, error in report.errors.items()
            )
            raise ProvisioningError(
                f"Image build failed for {len(report.missing_roles)} role(s): {failures}",
                stage="images",
                remediation="Fix the failing provisioning script and re-run "
                "'ps-deploy build-images'. Built images were kept in ami-ids.json.",
            )

        self.config.publish_image_ids(image_ids)
        return image_ids, report, teardown

    def resolve_images(
        self, options: RunOptions
    ) -> Tuple[Optional[Dict[Role, str]], str]:
        """
        Decide which images the stack uses

        Returns:
            Tuple of (image ids, source). Image ids are None when the
            images still have to be built
        """
        if options.use_fallback_images:
            logger.info("Using fallback images")
            return dict(FALLBACK_IMAGE_IDS), "fallback"

        if options.skip_image_creation:
            published = self.config.image_ids()
            if all(published.get(role) for role in ROLES):
                logger.info("Skipping image creation - using images from config")
                return published, "config"
            logger.warning(
                "Image creation skipped but the config does not hold all three "
                "image ids - using fallback images"
            )
            return dict(FALLBACK_IMAGE_IDS), "fallback"

        return None, "built"

    def validate_images(
        self, image_ids: Dict[Role, str], stage: str = "stack"
    ) -> None:
        """
        Check that every given image exists and is available

        Roles without an id are left to the caller's missing-image check.

        Raises:
            MissingImagesError: naming each image that cannot be used
        """
        ec2 = self.session.client("ec2", region_name=self.identity.region)
        unusable = []
        for role in ROLES:
            image_id = image_ids.get(role)
            if not image_id:
                continue
            try:
                images = ec2.describe_images(ImageIds=[image_id]).get("Images", [])
            except ClientError as e:
                if not error_code(e).startswith("InvalidAMIID"):
                    raise ProvisioningError(
                        f"Could not look up image {image_id}: {e}", stage=stage
                    ) from e
                images = []
            state = images[0].get("State", "unknown") if images else "not found"
            if state != "available":
                unusable.append(f"{role.value} image {image_id} ({state})")

        if unusable:
            raise MissingImagesError(
                "Images not available: " + ", ".join(unusable), stage=stage
            )
        logger.info("Image availability check passed")

    # ------------------------------------------------------------------
    # Stack
    # ------------------------------------------------------------------

    def _previous_templates_bucket(self) -> str:
        info = self.store.read_deployment_info() or {}
        if info.get("stack_name") not in (None, self.identity.stack_name):
            return ""
        return info.get("s3_bucket") or ""

    def deploy_stack(
        self, image_ids: Dict[Role, str], options: Optional[RunOptions] = None
    ) -> Tuple[Optional[DeploymentResult], str]:
        """
        Stage templates and create or update the stack

        Returns:
            Tuple of (deployment result, templates bucket); the result is None
            when the operator declined to update an existing stack
        """
        options = options or RunOptions()
        missing = [role for role in ROLES if not image_ids.get(role)]
        if missing:
            raise MissingImagesError(
                "No image id for " + ", ".join(role.value for role in missing)
            )

        deployer = StackDeployer(self.identity.region, self.session, self.console)
        stack_name = self.identity.stack_name

        if (
            not options.force_update
            and self.confirm_update is not None
            and deployer.stack_exists(stack_name)
            and not self.confirm_update(stack_name)
        ):
            logger.info("Deployment cancelled")
            return None, ""

        key_outcome = ensure_key_pair(
            self.identity, str(self.store.directory), session=self.session
        )
        if not key_outcome.ok:
            raise ProvisioningError(
                f"Could not ensure key pair {self.identity.key_pair_name}: "
                f"{key_outcome.error}",
                stage="stack",
            ) from key_outcome.error

        settings = self.config.orchestration_settings()
        stage = deployer.stage_templates(
            settings.templates_dir,
            self.identity,
            existing_bucket=self._previous_templates_bucket(),
        )
        request = StackDeploymentRequest(
            stack_name=stack_name,
            template_location=str(stage.master_template),
            parameters=build_parameters(self.identity, image_ids, stage.bucket),
        )
        result = deployer.deploy(
            request, timeout=options.stack_timeout, interval=options.stack_interval
        )
        return result, stage.bucket

    # ------------------------------------------------------------------
    # Post-deploy and instances
    # ------------------------------------------------------------------

    def post_deploy(self, outputs: StackOutputs) -> PostDeployResult:
        """Function code, tables and client secret; frontend comes later"""
        settings = self.config.orchestration_settings()
        steps = PostDeploySteps(self.identity, session=self.session)
        result = PostDeployResult()
        steps.update_function_code(settings.lambda_packages_dir, result)
        steps.initialize_tables(result)
        steps.fetch_client_secret(outputs, result)
        return result

    def deploy_instances(
        self,
        image_ids: Dict[Role, str],
        outputs: StackOutputs,
        settle_seconds: Optional[int] = None,
    ) -> List[ServiceInstance]:
        settings = self.config.orchestration_settings()
        if settle_seconds is not None:
            settings = replace(settings, settle_seconds=settle_seconds)
        bring_up = InstanceBringUp(self.identity, settings, session=self.session)
        return bring_up.bring_up(image_ids, outputs)

    def configure_frontend(
        self,
        outputs: StackOutputs,
        result: PostDeployResult,
        instances: List[ServiceInstance],
    ) -> PostDeployResult:
        steps = PostDeploySteps(self.identity, session=self.session)
        frontend = next(
            (i.instance_id for i in instances if i.role == Role.FRONTEND), ""
        )
        return steps.configure_frontend(
            frontend or steps.find_frontend_instance(),
            outputs,
            result.client_secret,
            result,
        )

    def write_records(self, summary: RunSummary) -> None:
        self.store.write_deployment_info(
            self.identity,
            summary.outputs,
            summary.image_ids,
            templates_bucket=summary.templates_bucket,
            post_deploy=summary.post_deploy,
            instances=summary.instances,
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _published_images(self, options: RunOptions) -> Tuple[Dict[Role, str], str]:
        image_ids, source = self.resolve_images(options)
        if image_ids is None:
            return self.config.image_ids(), "config"
        return image_ids, source

    def _stack_stage(self, summary: RunSummary, options: RunOptions) -> bool:
        summary.deployment, summary.templates_bucket = self.deploy_stack(
            summary.image_ids, options
        )
        if summary.deployment is None:
            summary.cancelled = True
            return False
        summary.post_deploy = self.post_deploy(summary.outputs)
        return True

    def run(self, options: Optional[RunOptions] = None) -> RunSummary:
        """
        Run every stage in order

        Args:
            options: Run flags

        Returns:
            RunSummary
        """
        options = options or RunOptions()
        summary = RunSummary(identity=self.identity)

        with interrupts_as_errors():
            image_ids, source = self.resolve_images(options)
            if image_ids is None:
                image_ids, summary.build_report, summary.build_teardown = (
                    self.build_images(parallel=options.parallel_builds)
                )
            elif source == "config":
                self.validate_images(image_ids)
            summary.image_ids, summary.image_source = image_ids, source

            if not self._stack_stage(summary, options):
                return summary

            if not options.skip_instances:
                summary.instances = self.deploy_instances(
                    image_ids, summary.outputs, options.settle_seconds
                )
            self.configure_frontend(summary.outputs, summary.post_deploy, summary.instances)
            self.write_records(summary)

        logger.info(f"Deployment of {self.identity.stack_name} finished")
        return summary

    def run_stack(self, options: Optional[RunOptions] = None) -> RunSummary:
        """Deploy the stack from already published (or fallback) images"""
        options = options or RunOptions()
        summary = RunSummary(identity=self.identity)

        with interrupts_as_errors():
            summary.image_ids, summary.image_source = self._published_images(options)
            if summary.image_source == "config":
                self.validate_images(summary.image_ids)
            if not self._stack_stage(summary, options):
                return summary
            self.configure_frontend(summary.outputs, summary.post_deploy, [])
            self.write_records(summary)
        return summary

    def run_instances(self, options: Optional[RunOptions] = None) -> RunSummary:
        """Bring up service instances against an existing stack"""
        options = options or RunOptions()
        summary = RunSummary(identity=self.identity)
        stack_name = self.identity.stack_name

        with interrupts_as_errors():
            summary.image_ids, summary.image_source = self._published_images(options)
            missing = [role for role in ROLES if not summary.image_ids.get(role)]
            if missing:
                raise MissingImagesError(
                    "No image id for " + ", ".join(role.value for role in missing),
                    stage="instances",
                )
            if summary.image_source == "config":
                self.validate_images(summary.image_ids, stage="instances")

            deployer = StackDeployer(self.identity.region, self.session, self.console)
            status = deployer.stack_status(stack_name)
            if not status or status == "DELETE_COMPLETE":
                raise DeploymentError(
                    f"Stack {stack_name} does not exist",
                    stage="instances",
                    remediation="Run 'ps-deploy deploy-stack' first.",
                )

            outputs = deployer.get_outputs(stack_name)
            summary.deployment = DeploymentResult(
                success=True,
                operation="READ",
                status=status,
                stack_name=stack_name,
                outputs=dict(outputs),
            )
            summary.templates_bucket = self._previous_templates_bucket()
            summary.instances = self.deploy_instances(
                summary.image_ids, outputs, options.settle_seconds
            )

            steps = PostDeploySteps(self.identity, session=self.session)
            summary.post_deploy = steps.fetch_client_secret(outputs)
            self.configure_frontend(outputs, summary.post_deploy, summary.instances)
            self.write_records(summary)
        return summary
