# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
PS Deploy Exceptions

Custom exception classes for the deployment orchestrator. Every error carries
the pipeline stage it was raised in and the remediation the operator should
take, so the CLI can print a stage-tagged message.
"""

from typing import Optional


class PSDeployError(Exception):
    """Base exception for all orchestrator errors."""

    default_stage = "deploy"
    default_remediation = ""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        remediation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage or self.default_stage
        self.remediation = (
            remediation if remediation is not None else self.default_remediation
        )

    def __str__(self) -> str:
        return f"[{self.stage}] {self.message}"


class ConfigurationError(PSDeployError):
    """
    Raised when required input is missing or malformed.

    Examples:
        - Configuration file not found
        - stackName or region missing or empty
        - Base AMI or provisioning script missing
    """

    default_stage = "config"
    default_remediation = "Fix deployment-config.json and re-run the command."


class ProvisioningError(PSDeployError):
    """
    Raised when scaffolding or in-instance provisioning fails for a reason
    other than the resource already existing.

    Examples:
        - No default VPC and no vpcId configured
        - Staging bucket could not be created
        - Provisioning script exited non-zero
    """

    default_stage = "images"
    default_remediation = (
        "Check the provider error above, then re-run 'ps-deploy build-images'."
    )


class UnreachableError(PSDeployError):
    """Raised when a build instance never becomes reachable."""

    default_stage = "images"
    default_remediation = (
        "Verify the instance profile allows SSM and the instance has outbound "
        "network access, then re-run 'ps-deploy build-images'."
    )


class ImageTimeoutError(PSDeployError):
    """Raised when an image never reaches the available state."""

    default_stage = "images"
    default_remediation = (
        "Inspect the image in the EC2 console, then re-run 'ps-deploy build-images'."
    )


class MissingImagesError(PSDeployError):
    """Raised when the stack stage starts without an image for every role."""

    default_stage = "stack"
    default_remediation = (
        "Re-run 'ps-deploy build-images', or deploy with --skip-image-creation "
        "to reuse published or fallback images."
    )


class DeploymentError(PSDeployError):
    """
    Raised when stack convergence fails, rolls back or times out.

    Never retried automatically: the last provider event is kept so the
    operator can review the partial state first.
    """

    default_stage = "stack"
    default_remediation = (
        "Review the stack events, fix the cause, then re-run only the "
        "deployment stage with 'ps-deploy deploy-stack'."
    )

    def __init__(
        self,
        message: str,
        last_event: str = "",
        stage: Optional[str] = None,
        remediation: Optional[str] = None,
    ):
        super().__init__(message, stage=stage, remediation=remediation)
        self.last_event = last_event


class HealthCheckTimeout(PSDeployError):
    """
    Soft failure: a target never reported healthy within its attempts.

    Recorded on the service instance and reported in the summary, never
    raised out of the pipeline.
    """

    default_stage = "instances"
    default_remediation = (
        "Check the target group health in the EC2 console; slow-starting "
        "services usually recover on their own."
    )


class TeardownPartialFailure(PSDeployError):
    """Raised by callers that need cleanup to be complete."""

    default_stage = "cleanup"
    default_remediation = "Remove the listed resources manually, or re-run cleanup."

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class OrchestrationInterrupted(PSDeployError):
    """Raised when SIGINT or SIGTERM arrives during a run."""

    default_stage = "interrupt"
    default_remediation = (
        "Scaffolding was released. Run 'ps-deploy cleanup' to remove the "
        "stack, or re-run 'ps-deploy deploy' to resume."
    )
