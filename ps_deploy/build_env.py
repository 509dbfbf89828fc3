# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Transient Build Environment Module

Provisions the short-lived scaffolding image building needs (instance role
and profile, a temporary security group, a staging bucket) and owns its
teardown. Use transient_environment() so teardown runs on every exit path.
"""

import json
import logging
import os
import secrets
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

import boto3
from botocore.exceptions import ClientError

from .exceptions import OrchestrationInterrupted, ProvisioningError
from .models import CreateResult, DeploymentIdentity, TeardownReport, TransientEnvironment
from .polling import poll_until

logger = logging.getLogger(__name__)

# Build-time reachability and in-instance service verification
BUILD_INGRESS_PORTS = (22, 80, 443, 8080, 90)

SSM_MANAGED_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"
S3_POLICY_NAME = "S3AccessPolicy"

MANAGED_BY = "ps-deploy"
BUILD_PURPOSE = "AMI-Creation"

EC2_TRUST_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}


def build_tags(identity: DeploymentIdentity, purpose: str = BUILD_PURPOSE) -> List[dict]:
    """Tags put on every piece of build scaffolding"""
    return [
        {"Key": "StackName", "Value": identity.stack_name},
        {"Key": "Purpose", "Value": purpose},
        {"Key": "ManagedBy", "Value": MANAGED_BY},
    ]


@dataclass
class CreateOutcome:
    result: CreateResult
    error: Optional[ClientError] = None

    @property
    def ok(self) -> bool:
        return self.result != CreateResult.FAILED


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def idempotent_create(
    create: Callable[[], object],
    already_exists_codes: Iterable[str],
    description: str,
) -> CreateOutcome:
    """
    Run a create call, treating "already exists" as success

    Args:
        create: Zero-argument callable issuing the provider call
        already_exists_codes: Error codes meaning the resource is already there
        description: Used in log messages

    Returns:
        CreateOutcome with created, already-existed or failed
    """
    try:
        create()
        logger.info(f"Created {description}")
        return CreateOutcome(CreateResult.CREATED)
    except ClientError as e:
        if error_code(e) in set(already_exists_codes):
            logger.info(f"{description} already exists")
            return CreateOutcome(CreateResult.ALREADY_EXISTED)
        logger.error(f"Error creating {description}: {e}")
        return CreateOutcome(CreateResult.FAILED, e)


def _require(outcome: CreateOutcome, description: str) -> None:
    if not outcome.ok:
        raise ProvisioningError(
            f"Could not create {description}: {outcome.error}"
        ) from outcome.error


def delete_bucket(
    session: boto3.Session, region: str, bucket_name: str, report: TeardownReport
) -> None:
    """Delete every object version, then the bucket; outcome goes to report"""
    s3 = session.resource("s3", region_name=region)
    try:
        bucket = s3.Bucket(bucket_name)
        bucket.object_versions.all().delete()
        bucket.delete()
        logger.info(f"Deleted S3 bucket: {bucket_name}")
        report.deleted("delete-bucket", bucket_name)
    except ClientError as e:
        if error_code(e) == "NoSuchBucket":
            report.skipped("delete-bucket", bucket_name, "already gone")
            return
        logger.error(f"Error deleting bucket {bucket_name}: {e}")
        report.failed("delete-bucket", bucket_name, str(e))


class BuildEnvironmentManager:
    """Creates and tears down image-building scaffolding"""

    def __init__(
        self,
        identity: DeploymentIdentity,
        vpc_id: str = "",
        session: Optional[boto3.Session] = None,
        profile_propagation_seconds: int = 10,
    ):
        """
        Initialize build environment manager

        Args:
            identity: Deployment identity
            vpc_id: VPC for the temporary security group (default VPC if empty)
            session: boto3 session (optional)
            profile_propagation_seconds: Wait after creating the instance profile
        """
        self.identity = identity
        self.vpc_id = vpc_id
        self.session = session or boto3.Session(region_name=identity.region)
        self.ec2 = self.session.client("ec2", region_name=identity.region)
        self.iam = self.session.client("iam")
        self.s3 = self.session.client("s3", region_name=identity.region)
        self.profile_propagation_seconds = profile_propagation_seconds
        self.last_teardown_report: Optional[TeardownReport] = None

    @property
    def role_name(self) -> str:
        return f"{self.identity.stack_name}-ami-builder-role"

    @property
    def instance_profile_name(self) -> str:
        return f"{self.identity.stack_name}-ami-builder-profile"

    def provision(self) -> TransientEnvironment:
        """
        Create role, security group and staging bucket

        Anything created before a failure is torn down before the
        ProvisioningError propagates.

        Returns:
            TransientEnvironment
        """
        created = {"role": False, "sg": "", "bucket": "", "vpc": ""}

        try:
            self._provision_instance_profile(created)

            created["vpc"] = self._resolve_vpc()
            created["sg"] = self._create_security_group(created["vpc"])
            created["bucket"] = self._create_staging_bucket()
        except BaseException:
            partial = TransientEnvironment(
                security_group_id=created["sg"],
                staging_bucket=created["bucket"],
                instance_profile_name=self.instance_profile_name if created["role"] else "",
                role_name=self.role_name if created["role"] else "",
                vpc_id=created["vpc"],
            )
            logger.warning("Provisioning failed, releasing partial build environment")
            self.teardown(partial)
            raise

        env = TransientEnvironment(
            security_group_id=created["sg"],
            staging_bucket=created["bucket"],
            instance_profile_name=self.instance_profile_name,
            role_name=self.role_name,
            vpc_id=created["vpc"],
        )
        logger.info(f"Build environment ready: {env}")
        return env

    def _provision_instance_profile(self, created: dict) -> None:
        role_outcome = idempotent_create(
            lambda: self.iam.create_role(
                RoleName=self.role_name,
                AssumeRolePolicyDocument=json.dumps(EC2_TRUST_POLICY),
                Description="Build instances for Pixel Streaming images",
                Tags=build_tags(self.identity),
            ),
            ["EntityAlreadyExists"],
            f"IAM role {self.role_name}",
        )
        _require(role_outcome, f"IAM role {self.role_name}")
        # From here on a failure must release the role, its policies and profile
        created["role"] = True

        bucket_prefix = f"{self.identity.stack_name.lower()}-deploy-"
        s3_policy = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": ["s3:GetObject", "s3:ListBucket"],
                    "Resource": [
                        f"arn:aws:s3:::{bucket_prefix}*",
                        f"arn:aws:s3:::{bucket_prefix}*/*",
                    ],
                }
            ],
        }
        try:
            self.iam.put_role_policy(
                RoleName=self.role_name,
                PolicyName=S3_POLICY_NAME,
                PolicyDocument=json.dumps(s3_policy),
            )
            self.iam.attach_role_policy(
                RoleName=self.role_name, PolicyArn=SSM_MANAGED_POLICY_ARN
            )
        except ClientError as e:
            raise ProvisioningError(
                f"Could not attach policies to {self.role_name}: {e}"
            ) from e

        profile_outcome = idempotent_create(
            lambda: self.iam.create_instance_profile(
                InstanceProfileName=self.instance_profile_name
            ),
            ["EntityAlreadyExists"],
            f"instance profile {self.instance_profile_name}",
        )
        _require(profile_outcome, f"instance profile {self.instance_profile_name}")

        # LimitExceeded: a profile holds one role and ours is already in it
        attach_outcome = idempotent_create(
            lambda: self.iam.add_role_to_instance_profile(
                InstanceProfileName=self.instance_profile_name,
                RoleName=self.role_name,
            ),
            ["LimitExceeded", "EntityAlreadyExists"],
            f"role membership of {self.instance_profile_name}",
        )
        _require(attach_outcome, f"role membership of {self.instance_profile_name}")

        if profile_outcome.result == CreateResult.CREATED:
            # Freshly created profiles are not immediately usable by EC2
            time.sleep(self.profile_propagation_seconds)

    def _resolve_vpc(self) -> str:
        if self.vpc_id:
            return self.vpc_id

        try:
            response = self.ec2.describe_vpcs(
                Filters=[{"Name": "is-default", "Values": ["true"]}]
            )
        except ClientError as e:
            raise ProvisioningError(f"Could not look up the default VPC: {e}") from e

        vpcs = response.get("Vpcs", [])
        if not vpcs:
            raise ProvisioningError(
                f"No default VPC found in {self.identity.region}",
                remediation="Set infrastructure.vpcId in the configuration, or "
                "create a default VPC, then re-run.",
            )
        return vpcs[0]["VpcId"]

    def _create_security_group(self, vpc_id: str) -> str:
        group_name = f"temp-ami-creation-sg-{int(time.time())}"
        logger.info(f"Creating temporary security group: {group_name}")

        try:
            response = self.ec2.create_security_group(
                GroupName=group_name,
                Description="Temporary security group for AMI creation",
                VpcId=vpc_id,
                TagSpecifications=[
                    {"ResourceType": "security-group", "Tags": build_tags(self.identity)}
                ],
            )
        except ClientError as e:
            raise ProvisioningError(f"Could not create security group: {e}") from e

        group_id = response["GroupId"]

        permissions = [
            {
                "IpProtocol": "tcp",
                "FromPort": port,
                "ToPort": port,
                "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
            }
            for port in BUILD_INGRESS_PORTS
        ]
        outcome = idempotent_create(
            lambda: self.ec2.authorize_security_group_ingress(
                GroupId=group_id, IpPermissions=permissions
            ),
            ["InvalidPermission.Duplicate"],
            f"ingress rules on {group_id}",
        )
        if not outcome.ok:
            # The group exists at this point; hand it to the caller's cleanup
            self.delete_security_group(group_id, TeardownReport(), max_attempts=1)
            raise ProvisioningError(
                f"Could not open build ports on {group_id}: {outcome.error}"
            ) from outcome.error

        logger.info(f"Security group created: {group_id}")
        return group_id

    def _create_staging_bucket(self) -> str:
        bucket = (
            f"{self.identity.stack_name}-deploy-{int(time.time())}-{secrets.token_hex(4)}"
        ).lower()
        logger.info(f"Creating staging bucket: {bucket}")

        try:
            if self.identity.region == "us-east-1":
                self.s3.create_bucket(Bucket=bucket)
            else:
                self.s3.create_bucket(
                    Bucket=bucket,
                    CreateBucketConfiguration={
                        "LocationConstraint": self.identity.region
                    },
                )
        except ClientError as e:
            raise ProvisioningError(f"Could not create staging bucket: {e}") from e

        try:
            self.s3.put_bucket_versioning(
                Bucket=bucket, VersioningConfiguration={"Status": "Enabled"}
            )
            self.s3.put_bucket_tagging(
                Bucket=bucket, Tagging={"TagSet": build_tags(self.identity)}
            )
        except ClientError as e:
            self._delete_bucket(bucket, TeardownReport())
            raise ProvisioningError(f"Could not configure staging bucket: {e}") from e

        return bucket

    def teardown(self, env: TransientEnvironment) -> TeardownReport:
        """
        Delete the scaffolding in env

        Best-effort: every sub-resource is attempted independently and
        failures are logged and reported, never raised.

        Args:
            env: Environment returned by provision (may be partial)

        Returns:
            TeardownReport
        """
        report = TeardownReport()

        steps = [
            (env.staging_bucket, lambda: self._delete_bucket(env.staging_bucket, report)),
            (
                env.security_group_id,
                lambda: self.delete_security_group(env.security_group_id, report),
            ),
            (env.role_name, lambda: self.delete_instance_profile(report)),
        ]

        for resource, step in steps:
            if not resource:
                continue
            try:
                step()
            except OrchestrationInterrupted as e:
                report.failed("release", resource, str(e))
                self.last_teardown_report = report
                raise
            except Exception as e:
                logger.error(f"Error releasing {resource}: {e}", exc_info=True)
                report.failed("release", resource, str(e))

        self.last_teardown_report = report
        if report.unresolved:
            logger.warning(
                f"Build environment teardown left {len(report.unresolved)} resource(s) behind"
            )
        else:
            logger.info("Build environment released")
        return report

    def _delete_bucket(self, bucket_name: str, report: TeardownReport) -> None:
        delete_bucket(self.session, self.identity.region, bucket_name, report)

    def delete_security_group(
        self,
        group_id: str,
        report: TeardownReport,
        max_attempts: int = 12,
        interval: int = 15,
    ) -> None:
        def attempt():
            try:
                self.ec2.delete_security_group(GroupId=group_id)
                return True, "deleted"
            except ClientError as e:
                code = error_code(e)
                if code == "InvalidGroup.NotFound":
                    return True, "missing"
                if code == "DependencyViolation":
                    # Build instances are still shutting down
                    return False, str(e)
                raise

        try:
            outcome = poll_until(
                attempt,
                interval=interval,
                max_attempts=max_attempts,
                description=f"deletion of {group_id}",
            )
        except ClientError as e:
            logger.error(f"Error deleting security group {group_id}: {e}")
            report.failed("delete-security-group", group_id, str(e))
            return

        if not outcome.satisfied:
            report.failed("delete-security-group", group_id, str(outcome.value))
        elif outcome.value == "missing":
            report.skipped("delete-security-group", group_id, "already gone")
        else:
            logger.info(f"Deleted security group: {group_id}")
            report.deleted("delete-security-group", group_id)

    def delete_instance_profile(self, report: TeardownReport) -> None:
        calls = [
            (
                "remove-role-from-profile",
                self.instance_profile_name,
                lambda: self.iam.remove_role_from_instance_profile(
                    InstanceProfileName=self.instance_profile_name,
                    RoleName=self.role_name,
                ),
            ),
            (
                "delete-instance-profile",
                self.instance_profile_name,
                lambda: self.iam.delete_instance_profile(
                    InstanceProfileName=self.instance_profile_name
                ),
            ),
            (
                "detach-role-policy",
                self.role_name,
                lambda: self.iam.detach_role_policy(
                    RoleName=self.role_name, PolicyArn=SSM_MANAGED_POLICY_ARN
                ),
            ),
            (
                "delete-role-policy",
                self.role_name,
                lambda: self.iam.delete_role_policy(
                    RoleName=self.role_name, PolicyName=S3_POLICY_NAME
                ),
            ),
            (
                "delete-role",
                self.role_name,
                lambda: self.iam.delete_role(RoleName=self.role_name),
            ),
        ]

        for action, resource, call in calls:
            try:
                call()
                report.deleted(action, resource)
            except ClientError as e:
                if error_code(e) == "NoSuchEntity":
                    report.skipped(action, resource, "already gone")
                    continue
                logger.error(f"Error during {action} for {resource}: {e}")
                report.failed(action, resource, str(e))


@contextmanager
def transient_environment(
    manager: BuildEnvironmentManager,
) -> Iterator[TransientEnvironment]:
    """
    Provision scaffolding and guarantee its release

    Teardown is registered as soon as provisioning returns and runs on every
    exit path: success, error, or interrupt.
    """
    env = manager.provision()
    try:
        yield env
    finally:
        manager.teardown(env)


def ensure_key_pair(
    identity: DeploymentIdentity,
    key_dir: str = ".",
    session: Optional[boto3.Session] = None,
) -> CreateOutcome:
    """
    Create the EC2 key pair if it does not exist yet

    The private key of a newly created pair is saved as <name>.pem (mode 0400).

    Args:
        identity: Deployment identity
        key_dir: Directory for the private key file
        session: boto3 session (optional)

    Returns:
        CreateOutcome
    """
    session = session or boto3.Session(region_name=identity.region)
    ec2 = session.client("ec2", region_name=identity.region)

    try:
        ec2.describe_key_pairs(KeyNames=[identity.key_pair_name])
        logger.info(f"Key pair {identity.key_pair_name} already exists")
        return CreateOutcome(CreateResult.ALREADY_EXISTED)
    except ClientError as e:
        if error_code(e) != "InvalidKeyPair.NotFound":
            return CreateOutcome(CreateResult.FAILED, e)

    logger.warning(f"Key pair '{identity.key_pair_name}' not found. Creating it...")
    material = {}

    def create():
        response = ec2.create_key_pair(KeyName=identity.key_pair_name)
        material["key"] = response["KeyMaterial"]

    outcome = idempotent_create(
        create, ["InvalidKeyPair.Duplicate"], f"key pair {identity.key_pair_name}"
    )
    if outcome.result == CreateResult.CREATED:
        key_path = Path(key_dir) / f"{identity.key_pair_name}.pem"
        key_path.parent.mkdir(parents=True, exist_ok=True)
        key_path.write_text(material["key"])
        os.chmod(key_path, 0o400)
        logger.info(f"Key pair created and saved as {key_path}")
    return outcome
