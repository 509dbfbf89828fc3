# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Instance Bring-up Module

Launches one long-lived service instance per role from the produced images,
registers each with its target group and reports target health.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from .build_env import MANAGED_BY
from .config import OrchestrationSettings
from .exceptions import HealthCheckTimeout, ProvisioningError
from .models import (
    ROLES,
    DeploymentIdentity,
    HealthState,
    Role,
    ServiceInstance,
    StackOutputs,
)
from .polling import poll_until

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkPlacement:
    subnet_id: str
    security_group_ids: Tuple[str, ...] = ()


class InstanceBringUp:
    """Launches, registers and health-checks service instances"""

    def __init__(
        self,
        identity: DeploymentIdentity,
        settings: OrchestrationSettings,
        session: Optional[boto3.Session] = None,
    ):
        """
        Initialize instance bring-up

        Args:
            identity: Deployment identity
            settings: Orchestration settings (instance type, settle delay, health polling)
            session: boto3 session (optional)
        """
        self.identity = identity
        self.settings = settings
        self.session = session or boto3.Session(region_name=identity.region)
        self.ec2 = self.session.client("ec2", region_name=identity.region)
        self.elbv2 = self.session.client("elbv2", region_name=identity.region)

        # (interval seconds, max attempts)
        self.running_poll = (10, 40)

    def resolve_placement(self, outputs: StackOutputs) -> NetworkPlacement:
        """Subnet and security group for service instances"""
        security_groups = (
            (outputs.security_group_id,) if outputs.security_group_id else ()
        )
        if outputs.subnet_id:
            return NetworkPlacement(outputs.subnet_id, security_groups)

        logger.info("Getting subnet ID...")
        response = self.ec2.describe_subnets(
            Filters=[
                {"Name": "tag:StackName", "Values": [self.identity.stack_name]},
                {"Name": "tag:Name", "Values": ["*private*"]},
            ]
        )
        subnets = response.get("Subnets", [])
        if not subnets:
            raise ProvisioningError(
                f"Could not find a private subnet tagged StackName={self.identity.stack_name}",
                stage="instances",
                remediation="Check that the stack finished creating its network, "
                "then re-run 'ps-deploy deploy-instances'.",
            )

        subnet_id = subnets[0]["SubnetId"]
        logger.info(f"Using subnet: {subnet_id}")
        return NetworkPlacement(subnet_id, security_groups)

    def instance_tags(self, role: Role) -> List[Dict[str, str]]:
        return [
            {"Key": "Name", "Value": f"{self.identity.stack_name}-{role.value}"},
            {"Key": "type", "Value": role.value.lower()},
            {"Key": "StackName", "Value": self.identity.stack_name},
            {"Key": "ManagedBy", "Value": MANAGED_BY},
        ]

    def launch_service_instance(
        self,
        role: Role,
        image_id: str,
        placement: NetworkPlacement,
        tags: Optional[List[Dict[str, str]]] = None,
        launch_template: str = "",
    ) -> ServiceInstance:
        """
        Launch one service instance

        Args:
            role: Component role
            image_id: Image to launch from
            placement: Network placement
            tags: Instance tags (defaults to instance_tags(role))
            launch_template: Launch template name from the stack (optional)

        Returns:
            ServiceInstance in state unknown
        """
        logger.info(f"Creating {role.value} instance...")
        params = {
            "ImageId": image_id,
            "MinCount": 1,
            "MaxCount": 1,
            "SubnetId": placement.subnet_id,
            "TagSpecifications": [
                {"ResourceType": "instance", "Tags": tags or self.instance_tags(role)}
            ],
        }
        if launch_template:
            params["LaunchTemplate"] = {"LaunchTemplateName": launch_template}
        else:
            params["InstanceType"] = self.settings.service_instance_type
            if self.identity.key_pair_name:
                params["KeyName"] = self.identity.key_pair_name
        if placement.security_group_ids:
            params["SecurityGroupIds"] = list(placement.security_group_ids)

        try:
            response = self.ec2.run_instances(**params)
        except ClientError as e:
            raise ProvisioningError(
                f"Failed to launch {role.value} instance: {e}", stage="instances"
            ) from e

        instance_id = response["Instances"][0]["InstanceId"]
        logger.info(f"{role.value} instance created: {instance_id}")
        return ServiceInstance(role=role, instance_id=instance_id)

    def await_running(self, instance: ServiceInstance) -> bool:
        """
        Wait until the instance is running and move it to initial

        Returns:
            True if the instance is running
        """
        interval, attempts = self.running_poll

        def check():
            response = self.ec2.describe_instances(InstanceIds=[instance.instance_id])
            data = response["Reservations"][0]["Instances"][0]
            return data["State"]["Name"] == "running", data

        outcome = poll_until(
            check,
            interval=interval,
            max_attempts=attempts,
            description=f"{instance.instance_id} running",
            retry_on=(ClientError,),
        )
        if not outcome.satisfied:
            instance.detail = "instance did not reach running state"
            logger.error(f"{instance.role.value} {instance.instance_id}: {instance.detail}")
            return False

        instance.address = outcome.value.get("PrivateIpAddress", "")
        instance.transition(HealthState.INITIAL)
        return True

    def resolve_target_group(self, role: Role, outputs: StackOutputs) -> str:
        """Target group ARN for role, empty when none can be found"""
        arn = outputs.target_group_arn(role)
        if arn:
            return arn

        needle = f"{self.identity.stack_name}-{role.value}".lower()
        paginator = self.elbv2.get_paginator("describe_target_groups")
        for page in paginator.paginate():
            for group in page.get("TargetGroups", []):
                if needle in group.get("TargetGroupName", "").lower():
                    return group["TargetGroupArn"]

        logger.warning(f"No target group found for {role.value}")
        return ""

    def register(self, instance: ServiceInstance) -> None:
        """Register instance with its target group"""
        logger.info(f"Registering {instance.role.value} instance with Target Group...")
        self.elbv2.register_targets(
            TargetGroupArn=instance.target_group_arn,
            Targets=[{"Id": instance.instance_id}],
        )

    def target_state(self, target_group_arn: str, instance_id: str) -> str:
        response = self.elbv2.describe_target_health(
            TargetGroupArn=target_group_arn, Targets=[{"Id": instance_id}]
        )
        descriptions = response.get("TargetHealthDescriptions", [])
        if not descriptions:
            return "unavailable"
        return descriptions[0].get("TargetHealth", {}).get("State", "unavailable")

    def poll_health(
        self,
        target_group_arn: str,
        instance_id: str,
        max_attempts: int = 30,
        interval: float = 10,
        on_state: Optional[Callable[[str], None]] = None,
    ) -> HealthState:
        """
        Poll target health until healthy or attempts run out

        Never raises on exhaustion: the result is TIMED_OUT.

        Args:
            target_group_arn: Target group
            instance_id: Registered target
            max_attempts: Number of polls
            interval: Seconds between polls
            on_state: Callback with each observed provider state

        Returns:
            HealthState.HEALTHY or HealthState.TIMED_OUT
        """

        def check():
            state = self.target_state(target_group_arn, instance_id)
            return state == "healthy", state

        outcome = poll_until(
            check,
            interval=interval,
            max_attempts=max_attempts,
            description=f"{instance_id} healthy in target group",
            retry_on=(ClientError,),
            on_attempt=(lambda attempt, state: on_state(state)) if on_state else None,
        )
        return HealthState.HEALTHY if outcome.satisfied else HealthState.TIMED_OUT

    def _track_health(self, instance: ServiceInstance) -> Callable[[str], None]:
        def observe(state):
            if state == "unhealthy" and instance.health_state in (
                HealthState.INITIAL,
                HealthState.UNHEALTHY,
            ):
                instance.transition(HealthState.UNHEALTHY, "target reported unhealthy")

        return observe

    def bring_up(
        self,
        image_ids: Mapping[Role, str],
        outputs: StackOutputs,
        roles: Iterable[Role] = ROLES,
    ) -> List[ServiceInstance]:
        """
        Launch, register and health-check one instance per role

        Health timeouts are soft: they are recorded on the instance and
        reported, never raised.

        Args:
            image_ids: One image id per role
            outputs: Stack outputs
            roles: Roles to bring up

        Returns:
            ServiceInstance records
        """
        placement = self.resolve_placement(outputs)

        instances = [
            self.launch_service_instance(
                role,
                image_ids[role],
                placement,
                launch_template=outputs.launch_template_name(role),
            )
            for role in roles
        ]

        logger.info("Waiting for instances to be running...")
        running = [instance for instance in instances if self.await_running(instance)]

        if running and self.settings.settle_seconds > 0:
            logger.info(
                f"Waiting {self.settings.settle_seconds} seconds for instance initialization..."
            )
            time.sleep(self.settings.settle_seconds)

        for instance in running:
            instance.target_group_arn = self.resolve_target_group(instance.role, outputs)
            if not instance.registered:
                instance.detail = "no target group found; instance not registered"
                continue
            try:
                self.register(instance)
            except ClientError as e:
                logger.error(f"Failed to register {instance.instance_id}: {e}")
                instance.detail = f"registration failed: {e}"
                instance.target_group_arn = ""

        logger.info("Waiting for targets to become healthy...")
        for instance in running:
            if not instance.registered:
                continue
            state = self.poll_health(
                instance.target_group_arn,
                instance.instance_id,
                max_attempts=self.settings.health_attempts,
                interval=self.settings.health_interval,
                on_state=self._track_health(instance),
            )
            if state == HealthState.HEALTHY:
                instance.transition(HealthState.HEALTHY, "")
                instance.detail = ""
                logger.info(f"{instance.role.value} target is healthy")
            else:
                warning = HealthCheckTimeout(
                    f"{instance.role.value} target did not become healthy after "
                    f"{self.settings.health_attempts} attempts"
                )
                instance.transition(HealthState.TIMED_OUT, warning.message)
                logger.warning(
                    f"{warning.message}. This may be normal if the application "
                    "needs more time to start"
                )

        return instances
