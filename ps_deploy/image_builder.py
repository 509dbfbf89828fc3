# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Image Builder Module

Builds one machine image per component role: launch a build instance, wait
until it is reachable over SSM, run the role's provisioning script against the
published source tree, snapshot the instance, and terminate it.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import ClientError

from .build_env import BUILD_PURPOSE, MANAGED_BY
from .config import BuildSettings
from .distribution import ArtifactChannel
from .exceptions import (
    ConfigurationError,
    ImageTimeoutError,
    OrchestrationInterrupted,
    ProvisioningError,
    UnreachableError,
)
from .models import (
    ArtifactReference,
    BuildReport,
    BuildTarget,
    DeploymentIdentity,
    Role,
    TransientEnvironment,
)
from .polling import poll_until
from .ssm import RemoteShell, exported_script

logger = logging.getLogger(__name__)

# Component directory names inside the source tree
COMPONENT_NAMES = {
    Role.SIGNALLING: "SignallingWebServer",
    Role.MATCHMAKER: "Matchmaker",
    Role.FRONTEND: "Frontend",
}

# Where build instances receive the published source tree
SOURCE_DIR = "/opt/epic-infrastructure"


class ImageBuilder:
    """Produces component images from build instances"""

    def __init__(
        self,
        identity: DeploymentIdentity,
        settings: BuildSettings,
        session: Optional[boto3.Session] = None,
    ):
        """
        Initialize image builder

        Clients are created here, before any worker threads start, and shared.

        Args:
            identity: Deployment identity
            settings: Build settings (base image, instance type, scripts)
            session: boto3 session (optional)
        """
        self.identity = identity
        self.settings = settings
        self.session = session or boto3.Session(region_name=identity.region)
        self.ec2 = self.session.client("ec2", region_name=identity.region)
        self.ssm = self.session.client("ssm", region_name=identity.region)
        self.shell = RemoteShell(self.ssm)

        # (interval seconds, max attempts)
        self.running_poll = (10, 40)
        self.reachable_poll = (10, 30)
        self.command_poll = (15, 120)
        self.image_poll = (15, 80)
        self.launch_retry = (10, 6)

        # Set when the run is interrupted; workers stop at their next poll
        self.cancelled = threading.Event()

    def _checkpoint(self, attempt=None, value=None) -> None:
        if self.cancelled.is_set():
            raise OrchestrationInterrupted("Image build cancelled")

    def targets(self, roles: Iterable[Role]) -> List[BuildTarget]:
        return [BuildTarget(role, self.settings.script_for(role)) for role in roles]

    def validate(self, targets: Iterable[BuildTarget]) -> None:
        """Fail fast before anything is launched"""
        if not self.settings.base_ami_id:
            raise ConfigurationError("Base AMI id is not configured")
        if not self.settings.build_instance_type:
            raise ConfigurationError("Build instance type is not configured")

        missing = [
            str(target.provisioning_script)
            for target in targets
            if not target.provisioning_script.is_file()
        ]
        if missing:
            raise ConfigurationError(
                f"Provisioning script(s) not found: {', '.join(missing)}"
            )

    def _build_subnet(self, vpc_id: str) -> str:
        response = self.ec2.describe_subnets(
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}]
        )
        subnets = response.get("Subnets", [])
        if not subnets:
            raise ProvisioningError(f"No subnets found in VPC {vpc_id}")
        # Prefer subnets that hand out public addresses (package downloads)
        subnets.sort(key=lambda s: (not s.get("MapPublicIpOnLaunch", False), s["SubnetId"]))
        return subnets[0]["SubnetId"]

    def launch_build_instance(
        self, target: BuildTarget, env: TransientEnvironment
    ) -> str:
        """
        Launch the build instance for target

        Returns:
            Instance id
        """
        component = COMPONENT_NAMES[target.role]
        tags = [
            {"Key": "Name", "Value": f"{self.identity.stack_name}-{component}-builder"},
            {"Key": "Purpose", "Value": BUILD_PURPOSE},
            {"Key": "StackName", "Value": self.identity.stack_name},
            {"Key": "ManagedBy", "Value": MANAGED_BY},
            {"Key": "Role", "Value": target.role.value},
        ]
        params = {
            "ImageId": self.settings.base_ami_id,
            "InstanceType": self.settings.build_instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "IamInstanceProfile": {"Name": env.instance_profile_name},
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if env.vpc_id:
            params["NetworkInterfaces"] = [
                {
                    "DeviceIndex": 0,
                    "SubnetId": self._build_subnet(env.vpc_id),
                    "Groups": [env.security_group_id],
                    "AssociatePublicIpAddress": True,
                }
            ]
        else:
            params["SecurityGroupIds"] = [env.security_group_id]

        def attempt():
            try:
                response = self.ec2.run_instances(**params)
            except ClientError as e:
                # A new instance profile can take a few seconds to propagate
                message = str(e).lower()
                if "instance profile" in message or "iaminstanceprofile" in message:
                    return False, e
                raise
            return True, response["Instances"][0]["InstanceId"]

        interval, attempts = self.launch_retry
        try:
            outcome = poll_until(
                attempt,
                interval=interval,
                max_attempts=attempts,
                description=f"launch of {component} build instance",
            )
        except ClientError as e:
            raise ProvisioningError(
                f"Failed to launch {component} build instance: {e}"
            ) from e

        if not outcome.satisfied:
            raise ProvisioningError(
                f"Failed to launch {component} build instance: {outcome.value}"
            )

        instance_id = outcome.value
        logger.info(f"{component} build instance launched: {instance_id}")
        return instance_id

    def _describe_instance(self, instance_id: str) -> Dict:
        response = self.ec2.describe_instances(InstanceIds=[instance_id])
        return response["Reservations"][0]["Instances"][0]

    def await_reachable(self, instance_id: str) -> str:
        """
        Wait for the instance to run and register with SSM

        Returns:
            The instance address (public if it has one, else private)
        """
        interval, attempts = self.running_poll

        def running():
            instance = self._describe_instance(instance_id)
            state = instance["State"]["Name"]
            if state in ("shutting-down", "terminated", "stopped"):
                raise UnreachableError(f"Build instance {instance_id} is {state}")
            return state == "running", instance

        outcome = poll_until(
            running,
            interval=interval,
            max_attempts=attempts,
            description=f"{instance_id} running",
            on_attempt=self._checkpoint,
            retry_on=(ClientError,),
        )
        if not outcome.satisfied:
            raise UnreachableError(
                f"Build instance {instance_id} did not reach running state"
            )

        instance = outcome.value
        address = instance.get("PublicIpAddress") or instance.get("PrivateIpAddress", "")

        interval, attempts = self.reachable_poll
        online = self.shell.wait_until_online(
            instance_id,
            max_attempts=attempts,
            interval=interval,
            on_attempt=self._checkpoint,
        )
        if not online.satisfied:
            raise UnreachableError(
                f"Build instance {instance_id} did not become reachable "
                f"after {attempts} attempts (last SSM status: {online.value or 'unregistered'})"
            )

        logger.info(f"Build instance {instance_id} is reachable at {address}")
        return address

    def provision_instance(
        self,
        instance_id: str,
        target: BuildTarget,
        env: TransientEnvironment,
        reference: ArtifactReference,
    ) -> None:
        """Run the role's provisioning script on the build instance"""
        component = COMPONENT_NAMES[target.role]
        script = exported_script(
            target.provisioning_script.read_text(),
            {
                "S3_BUCKET": reference.bucket or env.staging_bucket,
                "AWS_REGION": self.identity.region,
                "COMPONENT_NAME": component,
                "SOURCE_DIR": SOURCE_DIR,
            },
        )
        commands = [
            f"mkdir -p {SOURCE_DIR}",
            ArtifactChannel.fetch_command(reference, SOURCE_DIR, self.identity.region),
            script,
        ]

        interval, attempts = self.command_poll
        try:
            result = self.shell.run(
                instance_id,
                commands,
                comment=f"Provision {self.identity.stack_name} {component} image",
                max_attempts=attempts,
                interval=interval,
                on_attempt=self._checkpoint,
            )
        except ClientError as e:
            raise ProvisioningError(
                f"Failed to run provisioning for {component} on {instance_id}: {e}"
            ) from e

        if not result.succeeded:
            logger.error(f"{component} provisioning output: {result.stderr[-2000:]}")
            raise ProvisioningError(
                f"{component} provisioning on {instance_id} finished with status "
                f"{result.status}"
            )
        logger.info(f"{component} provisioning complete on {instance_id}")

    def snapshot_instance(self, instance_id: str, target: BuildTarget) -> str:
        """
        Create an image from the build instance and wait until available

        Returns:
            Image id
        """
        component = COMPONENT_NAMES[target.role]
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        image_name = f"{self.identity.stack_name}-{component}-{timestamp}"

        try:
            response = self.ec2.create_image(
                InstanceId=instance_id,
                Name=image_name,
                Description=f"Pixel Streaming {component} AMI",
                NoReboot=True,
                TagSpecifications=[
                    {
                        "ResourceType": "image",
                        "Tags": [
                            {"Key": "StackName", "Value": self.identity.stack_name},
                            {"Key": "ManagedBy", "Value": MANAGED_BY},
                            {"Key": "Role", "Value": target.role.value},
                        ],
                    }
                ],
            )
        except ClientError as e:
            raise ProvisioningError(
                f"Failed to create image for {component}: {e}"
            ) from e

        image_id = response["ImageId"]
        logger.info(f"Image creation initiated: {image_id} ({image_name})")

        def available():
            images = self.ec2.describe_images(ImageIds=[image_id]).get("Images", [])
            state = images[0]["State"] if images else "pending"
            if state == "failed":
                raise ImageTimeoutError(f"Image {image_id} for {component} failed")
            return state == "available", state

        interval, attempts = self.image_poll
        outcome = poll_until(
            available,
            interval=interval,
            max_attempts=attempts,
            description=f"image {image_id} available",
            on_attempt=self._checkpoint,
            retry_on=(ClientError,),
        )
        if not outcome.satisfied:
            raise ImageTimeoutError(
                f"Image {image_id} for {component} not available after "
                f"{attempts * interval} seconds (state: {outcome.value})"
            )

        logger.info(f"Image ready: {image_id}")
        return image_id

    def terminate(self, instance_id: str) -> None:
        try:
            self.ec2.terminate_instances(InstanceIds=[instance_id])
            logger.info(f"Terminated build instance: {instance_id}")
        except ClientError as e:
            logger.error(f"Failed to terminate build instance {instance_id}: {e}")

    def build(
        self,
        target: BuildTarget,
        env: TransientEnvironment,
        reference: ArtifactReference,
    ) -> str:
        """
        Build the image for one target

        The build instance is terminated whether or not the build succeeds.

        Returns:
            Image id (also recorded on target)
        """
        self._checkpoint()
        instance_id = self.launch_build_instance(target, env)
        try:
            self.await_reachable(instance_id)
            self.provision_instance(instance_id, target, env, reference)
            image_id = self.snapshot_instance(instance_id, target)
        finally:
            self.terminate(instance_id)

        target.record_image(image_id)
        return image_id

    def build_all(
        self,
        targets: List[BuildTarget],
        env: TransientEnvironment,
        reference: ArtifactReference,
        parallel: bool = True,
    ) -> BuildReport:
        """
        Build every target; a failing target does not stop the others

        Returns only after every worker has finished, so callers can release
        the transient environment right after.

        Args:
            targets: Targets to build
            env: Transient environment
            reference: Published source tree
            parallel: One worker thread per target when True

        Returns:
            BuildReport
        """
        self.validate(targets)
        report = BuildReport(roles=[target.role for target in targets])

        def run(target: BuildTarget) -> None:
            component = COMPONENT_NAMES[target.role]
            try:
                image_id = self.build(target, env, reference)
                report.record_success(target.role, image_id)
            except OrchestrationInterrupted:
                self.cancelled.set()
                raise
            except Exception as e:
                logger.error(f"Image build for {component} failed: {e}", exc_info=True)
                report.record_failure(target.role, e)

        if parallel and len(targets) > 1:
            executor = ThreadPoolExecutor(max_workers=len(targets))
            try:
                futures = [executor.submit(run, target) for target in targets]
                for future in as_completed(futures):
                    future.result()
            except BaseException:
                self.cancelled.set()
                raise
            finally:
                executor.shutdown(wait=True)
        else:
            for target in targets:
                run(target)

        return report
