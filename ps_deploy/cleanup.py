# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Cleanup Module

Best-effort teardown of everything a deployment created. Every step runs
independently and records its outcome; running cleanup twice converges.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import ClientError
from rich.console import Console

from .build_env import MANAGED_BY, BuildEnvironmentManager, delete_bucket, error_code
from .exceptions import OrchestrationInterrupted
from .models import DeploymentIdentity, TeardownReport
from .polling import poll_until
from .records import ResultStore
from .stack_deployer import StackDeployer

logger = logging.getLogger(__name__)

LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]


@dataclass
class CleanupOptions:
    delete_images: bool = False
    delete_keys: bool = False
    stack_timeout: int = 1800
    stack_interval: int = 15


@dataclass
class VpcDependencyReport:
    """Resources that keep a VPC from being deleted, by category"""

    vpc_id: str
    blocking: Dict[str, List[str]] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def clear(self) -> bool:
        return not any(self.blocking.values())


class CleanupCoordinator:
    """Removes a deployment's stack, images, keys, scaffolding and records"""

    def __init__(
        self,
        identity: DeploymentIdentity,
        store: Optional[ResultStore] = None,
        session: Optional[boto3.Session] = None,
        key_dir: str = ".",
        console: Optional[Console] = None,
    ):
        """
        Initialize cleanup coordinator

        Args:
            identity: Deployment identity
            store: Result records (defaults to the current directory)
            session: boto3 session (optional)
            key_dir: Directory holding <key pair>.pem
            console: rich console for progress display (optional)
        """
        self.identity = identity
        self.store = store or ResultStore()
        self.session = session or boto3.Session(region_name=identity.region)
        self.key_dir = Path(key_dir)
        self.ec2 = self.session.client("ec2", region_name=identity.region)
        self.s3 = self.session.client("s3", region_name=identity.region)
        self.deployer = StackDeployer(
            region=identity.region, session=self.session, console=console
        )
        self.build_env = BuildEnvironmentManager(identity, session=self.session)

        # (interval seconds, max attempts)
        self.termination_poll = (15, 40)

    def teardown(self, options: Optional[CleanupOptions] = None) -> TeardownReport:
        """
        Run every cleanup step in dependency order

        Args:
            options: What to delete beyond the stack and scaffolding

        Returns:
            TeardownReport
        """
        options = options or CleanupOptions()
        report = TeardownReport()

        steps = [
            ("terminate-instances", lambda: self.terminate_leftover_instances(report)),
            ("delete-stack", lambda: self.delete_stack(options, report)),
            ("delete-buckets", lambda: self.delete_buckets(report)),
            ("delete-build-scaffolding", lambda: self.delete_build_scaffolding(report)),
        ]
        if options.delete_images:
            steps.append(("delete-images", lambda: self.delete_images(report)))
        if options.delete_keys:
            steps.append(("delete-keys", lambda: self.delete_key_pair(report)))

        for action, step in steps:
            try:
                step()
            except OrchestrationInterrupted as e:
                report.failed(action, self.identity.stack_name, str(e))
                raise
            except Exception as e:
                logger.error(f"Cleanup step {action} failed: {e}", exc_info=True)
                report.failed(action, self.identity.stack_name, str(e))

        self.store.remove_records(report)

        if report.success:
            logger.info("Cleanup completed")
        else:
            logger.warning(f"Cleanup left {len(report.unresolved)} item(s) unresolved")
        return report

    def _tagged_filters(self) -> List[Dict]:
        return [
            {"Name": "tag:ManagedBy", "Values": [MANAGED_BY]},
            {"Name": "tag:StackName", "Values": [self.identity.stack_name]},
        ]

    def terminate_leftover_instances(self, report: TeardownReport) -> None:
        """Terminate service and build instances tagged for this stack"""
        response = self.ec2.describe_instances(
            Filters=self._tagged_filters()
            + [{"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES}]
        )
        instance_ids = [
            instance["InstanceId"]
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]
        if not instance_ids:
            report.skipped("terminate-instances", "tagged instances", "none found")
            return

        logger.info(f"Terminating instances: {', '.join(instance_ids)}")
        self.ec2.terminate_instances(InstanceIds=instance_ids)

        def terminated():
            described = self.ec2.describe_instances(InstanceIds=instance_ids)
            states = [
                instance["State"]["Name"]
                for reservation in described.get("Reservations", [])
                for instance in reservation.get("Instances", [])
            ]
            return all(state == "terminated" for state in states), states

        interval, attempts = self.termination_poll
        outcome = poll_until(
            terminated,
            interval=interval,
            max_attempts=attempts,
            description="instance termination",
            retry_on=(ClientError,),
        )
        detail = "" if outcome.satisfied else "termination still in progress"
        for instance_id in instance_ids:
            report.deleted("terminate-instance", instance_id, detail)

    def delete_stack(self, options: CleanupOptions, report: TeardownReport) -> None:
        stack_name = self.identity.stack_name
        result = self.deployer.delete_stack(
            stack_name, timeout=options.stack_timeout, interval=options.stack_interval
        )
        if result.status == "NOT_FOUND":
            report.skipped("delete-stack", stack_name, "does not exist")
        elif result.success:
            report.deleted("delete-stack", stack_name)
        else:
            report.failed("delete-stack", stack_name, result.error or result.status)

    def _owned_bucket_pattern(self) -> re.Pattern:
        stack = re.escape(self.identity.stack_name.lower())
        return re.compile(rf"^{stack}-(deploy-\d+|templates)-[0-9a-f]{{8}}$")

    def delete_buckets(self, report: TeardownReport) -> None:
        """Recorded template bucket plus leftover staging/template buckets"""
        buckets = []
        info = self.store.read_deployment_info() or {}
        if info.get("s3_bucket"):
            buckets.append(info["s3_bucket"])

        pattern = self._owned_bucket_pattern()
        for bucket in self.s3.list_buckets().get("Buckets", []):
            name = bucket.get("Name", "")
            if pattern.match(name) and name not in buckets:
                buckets.append(name)

        if not buckets:
            report.skipped("delete-bucket", "template and staging buckets", "none found")
            return

        for name in buckets:
            delete_bucket(self.session, self.identity.region, name, report)

    def delete_build_scaffolding(self, report: TeardownReport) -> None:
        """Security groups and the instance role left by an aborted image build"""
        response = self.ec2.describe_security_groups(Filters=self._tagged_filters())
        groups = [group["GroupId"] for group in response.get("SecurityGroups", [])]
        if not groups:
            report.skipped("delete-security-group", "build security groups", "none found")
        for group_id in groups:
            self.build_env.delete_security_group(group_id, report)

        self.build_env.delete_instance_profile(report)

    def _image_ids_to_delete(self) -> List[str]:
        recorded = list(self.store.read_image_ids().values())
        if recorded:
            return recorded

        response = self.ec2.describe_images(
            Owners=["self"],
            Filters=self._tagged_filters(),
        )
        return [image["ImageId"] for image in response.get("Images", [])]

    def delete_images(self, report: TeardownReport) -> None:
        """Deregister images and delete their snapshots"""
        image_ids = self._image_ids_to_delete()
        if not image_ids:
            report.skipped("delete-image", "images", "none found")
            return

        for image_id in image_ids:
            try:
                images = self.ec2.describe_images(ImageIds=[image_id]).get("Images", [])
            except ClientError as e:
                if error_code(e) in ("InvalidAMIID.NotFound", "InvalidAMIID.Unavailable"):
                    report.skipped("delete-image", image_id, "already gone")
                    continue
                report.failed("delete-image", image_id, str(e))
                continue

            if not images:
                report.skipped("delete-image", image_id, "already gone")
                continue

            # Snapshot ids are only discoverable before deregistering
            snapshot_ids = [
                mapping["Ebs"]["SnapshotId"]
                for mapping in images[0].get("BlockDeviceMappings", [])
                if mapping.get("Ebs", {}).get("SnapshotId")
            ]

            try:
                self.ec2.deregister_image(ImageId=image_id)
                logger.info(f"Deregistered image: {image_id}")
                report.deleted("delete-image", image_id)
            except ClientError as e:
                logger.warning(f"Failed to delete AMI {image_id}: {e}")
                report.failed("delete-image", image_id, str(e))
                continue

            for snapshot_id in snapshot_ids:
                try:
                    self.ec2.delete_snapshot(SnapshotId=snapshot_id)
                    report.deleted("delete-snapshot", snapshot_id)
                except ClientError as e:
                    if error_code(e) == "InvalidSnapshot.NotFound":
                        report.skipped("delete-snapshot", snapshot_id, "already gone")
                    else:
                        logger.warning(f"Failed to delete snapshot {snapshot_id}: {e}")
                        report.failed("delete-snapshot", snapshot_id, str(e))

    def delete_key_pair(self, report: TeardownReport) -> None:
        key_name = self.identity.key_pair_name
        try:
            self.ec2.describe_key_pairs(KeyNames=[key_name])
        except ClientError as e:
            if error_code(e) == "InvalidKeyPair.NotFound":
                report.skipped("delete-key-pair", key_name, "does not exist")
            else:
                report.failed("delete-key-pair", key_name, str(e))
        else:
            self.ec2.delete_key_pair(KeyName=key_name)
            logger.info(f"Deleted key pair: {key_name}")
            report.deleted("delete-key-pair", key_name)

        pem = self.key_dir / f"{key_name}.pem"
        if pem.exists():
            pem.chmod(0o600)
            pem.unlink()
            report.deleted("remove-key-file", str(pem))
        else:
            report.skipped("remove-key-file", str(pem), "not present")


def vpc_dependencies(
    vpc_id: str, region: str, session: Optional[boto3.Session] = None
) -> VpcDependencyReport:
    """
    List resources that block deletion of a VPC

    Args:
        vpc_id: VPC to inspect
        region: AWS region
        session: boto3 session (optional)

    Returns:
        VpcDependencyReport
    """
    session = session or boto3.Session(region_name=region)
    ec2 = session.client("ec2", region_name=region)
    elbv2 = session.client("elbv2", region_name=region)
    rds = session.client("rds", region_name=region)
    vpc_filter = [{"Name": "vpc-id", "Values": [vpc_id]}]

    def instances():
        response = ec2.describe_instances(
            Filters=vpc_filter
            + [{"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES}]
        )
        return [
            f"{i['InstanceId']} ({i['State']['Name']})"
            for r in response.get("Reservations", [])
            for i in r.get("Instances", [])
        ]

    def nat_gateways():
        response = ec2.describe_nat_gateways(Filters=vpc_filter)
        return [
            f"{g['NatGatewayId']} ({g.get('State', '')})"
            for g in response.get("NatGateways", [])
            if g.get("State") != "deleted"
        ]

    def network_interfaces():
        response = ec2.describe_network_interfaces(Filters=vpc_filter)
        return [
            f"{n['NetworkInterfaceId']} ({n.get('InterfaceType', '')}, {n.get('Status', '')})"
            for n in response.get("NetworkInterfaces", [])
        ]

    def security_groups():
        response = ec2.describe_security_groups(Filters=vpc_filter)
        return [
            f"{g['GroupId']} ({g.get('GroupName', '')})"
            for g in response.get("SecurityGroups", [])
            if g.get("GroupName") != "default"
        ]

    def route_tables():
        response = ec2.describe_route_tables(Filters=vpc_filter)
        return [
            t["RouteTableId"]
            for t in response.get("RouteTables", [])
            if not any(a.get("Main") for a in t.get("Associations", []))
        ]

    def internet_gateways():
        response = ec2.describe_internet_gateways(
            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}]
        )
        return [g["InternetGatewayId"] for g in response.get("InternetGateways", [])]

    def vpc_endpoints():
        response = ec2.describe_vpc_endpoints(Filters=vpc_filter)
        return [
            f"{e['VpcEndpointId']} ({e.get('ServiceName', '')})"
            for e in response.get("VpcEndpoints", [])
        ]

    def load_balancers():
        response = elbv2.describe_load_balancers()
        return [
            lb.get("LoadBalancerName", lb.get("LoadBalancerArn", ""))
            for lb in response.get("LoadBalancers", [])
            if lb.get("VpcId") == vpc_id
        ]

    def db_instances():
        response = rds.describe_db_instances()
        return [
            f"{db['DBInstanceIdentifier']} ({db.get('DBInstanceStatus', '')})"
            for db in response.get("DBInstances", [])
            if db.get("DBSubnetGroup", {}).get("VpcId") == vpc_id
        ]

    checks = {
        "instances": instances,
        "nat_gateways": nat_gateways,
        "network_interfaces": network_interfaces,
        "security_groups": security_groups,
        "route_tables": route_tables,
        "internet_gateways": internet_gateways,
        "vpc_endpoints": vpc_endpoints,
        "load_balancers": load_balancers,
        "db_instances": db_instances,
    }

    report = VpcDependencyReport(vpc_id=vpc_id)
    for category, check in checks.items():
        try:
            report.blocking[category] = check()
        except ClientError as e:
            logger.warning(f"Could not check {category} in {vpc_id}: {e}")
            report.errors[category] = str(e)
            report.blocking[category] = []
    return report
