# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Remote shell execution through SSM Run Command.

Used for build-instance reachability and provisioning, and for configuring
the frontend instance after the stack is up.
"""

import logging
import shlex
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from .polling import PollOutcome, poll_until

logger = logging.getLogger(__name__)

TERMINAL_COMMAND_STATUSES = {"Success", "Failed", "Cancelled", "TimedOut"}


class CommandResult:
    """Final state of one SSM command invocation"""

    def __init__(self, command_id: str, status: str, stdout: str = "", stderr: str = ""):
        self.command_id = command_id
        self.status = status
        self.stdout = stdout
        self.stderr = stderr

    @property
    def succeeded(self) -> bool:
        return self.status == "Success"

    def __repr__(self) -> str:
        return f"CommandResult({self.command_id!r}, {self.status!r})"


class RemoteShell:
    """Runs shell scripts on managed instances"""

    def __init__(self, ssm_client):
        self.ssm = ssm_client

    def ping_status(self, instance_id: str) -> str:
        """PingStatus of the instance's SSM agent, empty if not registered"""
        response = self.ssm.describe_instance_information(
            Filters=[{"Key": "InstanceIds", "Values": [instance_id]}]
        )
        info = response.get("InstanceInformationList", [])
        return info[0].get("PingStatus", "") if info else ""

    def wait_until_online(
        self,
        instance_id: str,
        max_attempts: int = 30,
        interval: float = 10,
        on_attempt: Optional[Callable[[int, Any], None]] = None,
    ) -> PollOutcome:
        """Poll until the SSM agent on instance_id reports Online"""
        logger.debug(f"Waiting for SSM agent on {instance_id}...")

        def check():
            status = self.ping_status(instance_id)
            return status == "Online", status

        return poll_until(
            check,
            interval=interval,
            max_attempts=max_attempts,
            description=f"SSM agent on {instance_id}",
            retry_on=(ClientError,),
            on_attempt=on_attempt,
        )

    def run(
        self,
        instance_id: str,
        commands: List[str],
        comment: str = "",
        max_attempts: int = 120,
        interval: float = 15,
        execution_timeout: Optional[int] = None,
        on_attempt: Optional[Callable[[int, Any], None]] = None,
    ) -> CommandResult:
        """
        Send an AWS-RunShellScript command and wait for it to finish

        Args:
            instance_id: Target instance
            commands: Shell lines to run
            comment: Command comment (truncated to 100 chars)
            max_attempts: Invocation polls before giving up
            interval: Seconds between polls
            execution_timeout: Server-side execution timeout in seconds;
                defaults to the polling budget (max_attempts * interval)

        Returns:
            CommandResult; status is "Pending" if polling was exhausted
        """
        if execution_timeout is None:
            execution_timeout = int(max_attempts * interval)

        response = self.ssm.send_command(
            InstanceIds=[instance_id],
            DocumentName="AWS-RunShellScript",
            Parameters={
                "commands": commands,
                "executionTimeout": [str(execution_timeout)],
            },
            TimeoutSeconds=600,
            Comment=comment[:100],
        )
        command_id = response["Command"]["CommandId"]
        logger.info(f"Command sent via SSM: {command_id} ({instance_id})")

        def check():
            try:
                invocation = self.ssm.get_command_invocation(
                    CommandId=command_id, InstanceId=instance_id
                )
            except ClientError as e:
                # Invocation is not queryable right after send_command
                if e.response.get("Error", {}).get("Code") == "InvocationDoesNotExist":
                    return False, None
                raise
            logger.debug(f"Command {command_id} status: {invocation['Status']}")
            return invocation["Status"] in TERMINAL_COMMAND_STATUSES, invocation

        outcome = poll_until(
            check,
            interval=interval,
            max_attempts=max_attempts,
            description=f"command {command_id}",
            on_attempt=on_attempt,
        )

        invocation: Dict[str, Any] = outcome.value or {}
        status = invocation.get("Status", "Pending") if outcome.satisfied else "Pending"
        return CommandResult(
            command_id=command_id,
            status=status,
            stdout=invocation.get("StandardOutputContent", ""),
            stderr=invocation.get("StandardErrorContent", ""),
        )


def exported_script(script: str, variables: Dict[str, Optional[str]]) -> str:
    """Prefix a shell script with export lines for the given variables"""
    lines = ["#!/bin/bash"]
    for name, value in variables.items():
        lines.append(f"export {name}={shlex.quote(value or '')}")
    lines.append("")
    body = script
    if body.startswith("#!"):
        body = body.split("\n", 1)[1] if "\n" in body else ""
    return "\n".join(lines) + "\n" + body
