# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Stack Deployer Module

Stages the nested templates and converges the CloudFormation master stack:
create when absent, update when present, wait for a terminal status.
"""

import logging
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import boto3
from botocore.exceptions import ClientError
from rich.console import Console

from .exceptions import ConfigurationError, DeploymentError, ProvisioningError
from .models import (
    ROLES,
    DeletionResult,
    DeploymentIdentity,
    DeploymentResult,
    Role,
    StackDeploymentRequest,
    StackOutputs,
)
from .polling import attempts_for, poll_until

logger = logging.getLogger(__name__)

NESTED_TEMPLATES = (
    "iam.yaml",
    "core-infrastructure.yaml",
    "load-balancers.yaml",
    "compute.yaml",
    "serverless.yaml",
    "services.yaml",
)
MASTER_TEMPLATE = "master.yaml"
NESTED_PREFIX = "nested-stacks"

# Stack parameter carrying the image id for each role
IMAGE_PARAMETERS = {
    Role.SIGNALLING: "SignallingServerAMI",
    Role.MATCHMAKER: "MatchmakerAMI",
    Role.FRONTEND: "FrontEndAMI",
}

NO_UPDATES_MESSAGE = "No updates are to be performed"

COMPLETE_STATUSES = {
    "CREATE": [
        "CREATE_COMPLETE",
        "CREATE_FAILED",
        "ROLLBACK_COMPLETE",
        "ROLLBACK_FAILED",
    ],
    "UPDATE": [
        "UPDATE_COMPLETE",
        "UPDATE_FAILED",
        "UPDATE_ROLLBACK_COMPLETE",
        "UPDATE_ROLLBACK_FAILED",
    ],
}

SUCCESS_STATUSES = {
    "CREATE": ["CREATE_COMPLETE"],
    "UPDATE": ["UPDATE_COMPLETE"],
}


@dataclass
class TemplateStage:
    """Nested templates uploaded for one deployment"""

    bucket: str
    master_template: Path
    uploaded: List[str] = field(default_factory=list)


def build_parameters(
    identity: DeploymentIdentity,
    image_ids: Mapping[Role, str],
    templates_bucket: str,
    additional_params: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """
    Build master stack parameters

    Args:
        identity: Deployment identity
        image_ids: One image id per role
        templates_bucket: Bucket holding the nested templates
        additional_params: Extra parameters passed through as-is

    Returns:
        Dictionary of parameter key-value pairs
    """
    parameters = {
        IMAGE_PARAMETERS[role]: image_ids[role] for role in ROLES if role in image_ids
    }
    parameters["StackName"] = identity.stack_name
    parameters["NestedStacksS3Bucket"] = templates_bucket

    if additional_params:
        parameters.update(additional_params)

    return parameters


class StackDeployer:
    """Manages CloudFormation stack deployment"""

    def __init__(
        self,
        region: Optional[str] = None,
        session: Optional[boto3.Session] = None,
        console: Optional[Console] = None,
    ):
        """
        Initialize stack deployer

        Args:
            region: AWS region (optional)
            session: boto3 session (optional)
            console: rich console for progress display (optional)
        """
        self.region = region
        self.session = session or boto3.Session(region_name=region)
        self.cfn = self.session.client("cloudformation", region_name=region)
        self.s3 = self.session.client("s3", region_name=region)
        self.console = console or Console()

    def _bucket_exists(self, bucket: str) -> bool:
        try:
            self.s3.head_bucket(Bucket=bucket)
            return True
        except ClientError:
            return False

    def _create_bucket(self, bucket: str) -> None:
        if self.region == "us-east-1":
            self.s3.create_bucket(Bucket=bucket)
        else:
            self.s3.create_bucket(
                Bucket=bucket,
                CreateBucketConfiguration={"LocationConstraint": self.region},
            )

    def stage_templates(
        self,
        templates_dir: Path,
        identity: DeploymentIdentity,
        existing_bucket: str = "",
    ) -> TemplateStage:
        """
        Upload the nested templates to the staging bucket

        Reusing the bucket of a previous run keeps the NestedStacksS3Bucket
        parameter stable, so an unchanged re-deploy is a no-op.

        Args:
            templates_dir: Directory holding master.yaml and the nested templates
            identity: Deployment identity
            existing_bucket: Bucket from a previous run, reused if it still exists

        Returns:
            TemplateStage with the bucket and local master template path
        """
        templates_dir = Path(templates_dir)
        master = templates_dir / MASTER_TEMPLATE
        missing = [
            name
            for name in (MASTER_TEMPLATE,) + NESTED_TEMPLATES
            if not (templates_dir / name).is_file()
        ]
        if missing:
            raise ConfigurationError(
                f"Template(s) not found in {templates_dir}: {', '.join(missing)}",
                stage="stack",
            )

        reuse = bool(existing_bucket) and self._bucket_exists(existing_bucket)
        if reuse:
            bucket = existing_bucket
            logger.info(f"Using existing templates bucket: {bucket}")
        else:
            bucket = f"{identity.stack_name}-templates-{secrets.token_hex(4)}".lower()
            logger.info(f"Setting up S3 bucket for nested stack templates: {bucket}")

        try:
            if not reuse:
                self._create_bucket(bucket)

            stage = TemplateStage(bucket=bucket, master_template=master)
            for name in NESTED_TEMPLATES:
                key = f"{NESTED_PREFIX}/{name}"
                self.s3.upload_file(str(templates_dir / name), bucket, key)
                stage.uploaded.append(key)
                logger.info(f"Uploaded {name}")
        except ClientError as e:
            raise ProvisioningError(
                f"Failed to stage templates in {bucket}: {e}", stage="stack"
            ) from e

        logger.info("All nested templates uploaded successfully")
        return stage

    def stack_status(self, stack_name: str) -> Optional[str]:
        """Current stack status, None when the stack does not exist"""
        try:
            response = self.cfn.describe_stacks(StackName=stack_name)
        except ClientError as e:
            if "does not exist" in str(e):
                return None
            raise
        stacks = response.get("Stacks", [])
        return stacks[0].get("StackStatus") if stacks else None

    def stack_exists(self, stack_name: str) -> bool:
        """Check if stack exists"""
        status = self.stack_status(stack_name)
        return status is not None and status != "DELETE_COMPLETE"

    def deploy(
        self,
        request: StackDeploymentRequest,
        timeout: int = 1800,
        interval: int = 15,
    ) -> DeploymentResult:
        """
        Create or update the stack and wait for it to converge

        Args:
            request: Stack deployment request
            timeout: Seconds to wait for a terminal status
            interval: Seconds between status checks

        Returns:
            DeploymentResult (status NO_CHANGES when the update was a no-op)
        """
        stack_name = request.stack_name
        logger.info(f"Deploying stack: {stack_name}")

        template_param = request.template_argument()
        cfn_parameters = request.cfn_parameters()
        status = self.stack_status(stack_name)

        if status == "ROLLBACK_COMPLETE":
            raise DeploymentError(
                f"Stack {stack_name} is in ROLLBACK_COMPLETE and cannot be updated",
                last_event=self._get_stack_failure_reason(stack_name),
                remediation="Delete the stack with 'ps-deploy cleanup', then deploy again.",
            )
        if status and status.endswith("_IN_PROGRESS"):
            raise DeploymentError(
                f"Stack {stack_name} has an operation in progress ({status})",
                remediation="Wait for the current operation to finish, then re-run.",
            )

        try:
            if status and status != "DELETE_COMPLETE":
                logger.info(f"Stack {stack_name} exists - updating")
                response = self.cfn.update_stack(
                    StackName=stack_name,
                    **template_param,
                    Parameters=cfn_parameters,
                    Capabilities=list(request.capabilities),
                )
                operation = "UPDATE"
            else:
                logger.info(f"Creating new stack: {stack_name}")
                response = self.cfn.create_stack(
                    StackName=stack_name,
                    **template_param,
                    Parameters=cfn_parameters,
                    Capabilities=list(request.capabilities),
                    OnFailure="ROLLBACK",
                )
                operation = "CREATE"
        except ClientError as e:
            if NO_UPDATES_MESSAGE in str(e):
                logger.info(f"Stack {stack_name} is already up to date")
                return DeploymentResult(
                    success=True,
                    operation="UPDATE",
                    status="NO_CHANGES",
                    stack_name=stack_name,
                    outputs=dict(self.get_outputs(stack_name)),
                )
            logger.error(f"Error deploying stack: {e}")
            raise DeploymentError(
                f"Failed to submit stack {stack_name}: {e}"
            ) from e

        stack_id = response.get("StackId", "")
        result = self._wait_for_completion(stack_name, operation, timeout, interval)
        result.stack_id = result.stack_id or stack_id
        return result

    def _wait_for_completion(
        self, stack_name: str, operation: str, timeout: int, interval: int
    ) -> DeploymentResult:
        """
        Wait for stack operation to complete with progress display

        Args:
            stack_name: Stack name
            operation: CREATE or UPDATE
            timeout: Seconds before giving up
            interval: Seconds between checks

        Returns:
            DeploymentResult for a successful operation
        """
        from rich.progress import Progress, SpinnerColumn, TextColumn

        logger.info(f"Waiting for {operation} to complete...")

        target_statuses = COMPLETE_STATUSES[operation]
        success_set = SUCCESS_STATUSES[operation]

        def check():
            response = self.cfn.describe_stacks(StackName=stack_name)
            stacks = response.get("Stacks", [])
            if not stacks:
                raise DeploymentError(f"Stack {stack_name} not found")
            stack = stacks[0]
            return stack.get("StackStatus", "") in target_statuses, stack

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=self.console,
        ) as progress:
            task = progress.add_task(
                f"[cyan]{operation} stack: {stack_name}", total=None
            )
            last_event_time = [None]

            def show_latest_event(attempt, stack):
                events = self.get_stack_events(stack_name, limit=1)
                if events and events[0]["timestamp"] != last_event_time[0]:
                    last_event_time[0] = events[0]["timestamp"]
                    latest = events[0]
                    progress.update(
                        task,
                        description=f"[cyan]{operation}: {latest['resource']} - {latest['status']}",
                    )

            try:
                outcome = poll_until(
                    check,
                    interval=interval,
                    max_attempts=attempts_for(timeout, interval),
                    description=f"{operation} of {stack_name}",
                    on_attempt=show_latest_event,
                )
            except ClientError as e:
                logger.error(f"Error waiting for stack: {e}")
                raise DeploymentError(
                    f"Lost track of stack {stack_name}: {e}",
                    last_event=self._get_stack_failure_reason(stack_name),
                ) from e

        if not outcome.satisfied:
            raise DeploymentError(
                f"Timed out after {timeout}s waiting for {operation} of {stack_name}",
                last_event=self._latest_event(stack_name),
            )

        stack = outcome.value
        status = stack.get("StackStatus", "")
        if status not in success_set:
            reason = self._get_stack_failure_reason(stack_name)
            logger.error(f"Stack {operation} failed with {status}: {reason}")
            raise DeploymentError(
                f"Stack {stack_name} {operation} ended in {status}",
                last_event=reason,
            )

        logger.info(f"Stack {operation} complete: {status}")
        return DeploymentResult(
            success=True,
            operation=operation,
            status=status,
            stack_name=stack_name,
            stack_id=stack.get("StackId"),
            outputs=dict(StackOutputs.from_stack(stack)),
        )

    def get_outputs(self, stack_name: str) -> StackOutputs:
        """Read stack outputs"""
        response = self.cfn.describe_stacks(StackName=stack_name)
        stacks = response.get("Stacks", [])
        return StackOutputs.from_stack(stacks[0]) if stacks else StackOutputs()

    def _get_stack_failure_reason(self, stack_name: str) -> str:
        """Get failure reason from stack events"""
        try:
            response = self.cfn.describe_stack_events(StackName=stack_name)
            events = response.get("StackEvents", [])

            # Events are newest first; the root cause is the oldest failure
            for event in reversed(events):
                status = event.get("ResourceStatus", "")
                reason = event.get("ResourceStatusReason", "")
                if "FAILED" in status and "cancelled" not in reason.lower():
                    resource = event.get("LogicalResourceId", "Unknown")
                    return f"{resource}: {reason or 'Unknown'}"

            return "Unknown failure reason"
        except ClientError as e:
            return str(e)

    def _latest_event(self, stack_name: str) -> str:
        events = self.get_stack_events(stack_name, limit=1)
        if not events:
            return ""
        latest = events[0]
        return f"{latest['resource']}: {latest['status']} {latest['reason']}".strip()

    def get_stack_events(self, stack_name: str, limit: int = 20) -> List[Dict]:
        """
        Get recent stack events

        Args:
            stack_name: Stack name
            limit: Maximum number of events to return

        Returns:
            List of event dictionaries
        """
        try:
            response = self.cfn.describe_stack_events(StackName=stack_name)
            events = response.get("StackEvents", [])[:limit]

            return [
                {
                    "timestamp": event.get("Timestamp", ""),
                    "resource": event.get("LogicalResourceId", ""),
                    "status": event.get("ResourceStatus", ""),
                    "reason": event.get("ResourceStatusReason", ""),
                }
                for event in events
            ]
        except ClientError as e:
            logger.error(f"Error getting stack events: {e}")
            return []

    def delete_stack(
        self, stack_name: str, timeout: int = 1800, interval: int = 15
    ) -> DeletionResult:
        """
        Delete CloudFormation stack and wait for it to go away

        A timeout is reported in the result, not raised.

        Args:
            stack_name: Name of stack to delete
            timeout: Seconds to wait
            interval: Seconds between checks

        Returns:
            DeletionResult
        """
        if not self.stack_exists(stack_name):
            logger.info(f"Stack {stack_name} does not exist, nothing to delete")
            return DeletionResult(
                success=True, status="NOT_FOUND", stack_name=stack_name
            )

        logger.info(f"Deleting stack: {stack_name}")
        try:
            self.cfn.delete_stack(StackName=stack_name)
        except ClientError as e:
            logger.error(f"Error deleting stack: {e}")
            return DeletionResult(
                success=False, status="ERROR", stack_name=stack_name, error=str(e)
            )

        return self._wait_for_deletion(stack_name, timeout, interval)

    def _wait_for_deletion(
        self, stack_name: str, timeout: int, interval: int
    ) -> DeletionResult:
        """
        Wait for stack deletion to complete

        Args:
            stack_name: Stack name
            timeout: Seconds before giving up
            interval: Seconds between checks

        Returns:
            DeletionResult
        """
        from rich.progress import Progress, SpinnerColumn, TextColumn

        logger.info("Waiting for DELETE to complete...")

        def check():
            status = self.stack_status(stack_name)
            if status is None or status == "DELETE_COMPLETE":
                return True, "DELETE_COMPLETE"
            return status == "DELETE_FAILED", status

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=self.console,
        ) as progress:
            task = progress.add_task(f"[cyan]DELETE stack: {stack_name}", total=None)
            try:
                outcome = poll_until(
                    check,
                    interval=interval,
                    max_attempts=attempts_for(timeout, interval),
                    description=f"deletion of {stack_name}",
                    on_attempt=lambda attempt, status: progress.update(
                        task, description=f"[cyan]DELETE: {status}"
                    ),
                )
            except ClientError as e:
                return DeletionResult(
                    success=False, status="ERROR", stack_name=stack_name, error=str(e)
                )

        if not outcome.satisfied:
            logger.warning(f"Stack deletion timed out after {timeout}s")
            return DeletionResult(
                success=False,
                status="TIMEOUT",
                stack_name=stack_name,
                error=f"Deletion still in progress ({outcome.value}) after {timeout}s",
            )

        if outcome.value == "DELETE_FAILED":
            return DeletionResult(
                success=False,
                status="DELETE_FAILED",
                stack_name=stack_name,
                error=self._get_stack_failure_reason(stack_name),
            )

        logger.info(f"Stack {stack_name} deleted")
        return DeletionResult(
            success=True, status="DELETE_COMPLETE", stack_name=stack_name
        )
