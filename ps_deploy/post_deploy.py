# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Post-deploy steps run once the stack has converged: push function code,
seed the tables, look up the app client secret and configure the frontend.

Every step is soft. Failures become warnings on the PostDeployResult.
"""

import logging
import shlex
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import ClientError

from .models import DeploymentIdentity, PostDeployResult, StackOutputs
from .ssm import RemoteShell

logger = logging.getLogger(__name__)

FUNCTION_NAMES = (
    "authorizeClient",
    "createInstances",
    "keepConnectionAlive",
    "poller",
    "registerInstances",
    "requestSession",
    "sendSessionDetails",
    "terminateInstance",
    "uploadToDDB",
)

MANUAL_RETRIEVAL_REQUIRED = "MANUAL_RETRIEVAL_REQUIRED"
FRONTEND_CONFIGURE_SCRIPT = "/usr/customapps/pixelstreaming/configure-frontend-env.sh"
FRONTEND_SESSION_SECRET = "somethingsecret"


class PostDeploySteps:
    """Soft follow-up steps after stack convergence"""

    def __init__(
        self, identity: DeploymentIdentity, session: Optional[boto3.Session] = None
    ):
        self.identity = identity
        self.session = session or boto3.Session(region_name=identity.region)
        self.lambda_client = self.session.client("lambda", region_name=identity.region)
        self.cognito = self.session.client("cognito-idp", region_name=identity.region)
        self.ec2 = self.session.client("ec2", region_name=identity.region)
        self.shell = RemoteShell(self.session.client("ssm", region_name=identity.region))

        # (interval seconds, max attempts)
        self.command_poll = (10, 12)

    def _function_name(self, name: str) -> str:
        return f"{self.identity.stack_name}-{name}"

    def update_function_code(
        self, packages_dir: Path, result: Optional[PostDeployResult] = None
    ) -> PostDeployResult:
        """Update each function from <packages_dir>/<name>.zip when present"""
        result = result if result is not None else PostDeployResult()
        packages_dir = Path(packages_dir)
        logger.info("Updating Lambda functions with repository code...")

        for name in FUNCTION_NAMES:
            function_name = self._function_name(name)
            package = packages_dir / f"{name}.zip"
            if not package.is_file():
                result.warnings.append(f"Package not found for {name}")
                logger.warning(f"Package not found for {name}: {package}")
                continue
            try:
                self.lambda_client.update_function_code(
                    FunctionName=function_name, ZipFile=package.read_bytes()
                )
                result.functions_updated.append(function_name)
                logger.info(f"Updated Lambda function: {function_name}")
            except ClientError as e:
                result.functions_failed.append(function_name)
                result.warnings.append(f"Failed to update {function_name}")
                logger.warning(f"Failed to update {function_name}: {e}")

        return result

    def initialize_tables(self, result: Optional[PostDeployResult] = None) -> PostDeployResult:
        result = result if result is not None else PostDeployResult()
        function_name = self._function_name("uploadToDDB")
        logger.info("Initializing DynamoDB...")
        try:
            response = self.lambda_client.invoke(FunctionName=function_name)
            if response.get("FunctionError"):
                raise RuntimeError(response["FunctionError"])
            result.tables_initialized = True
        except (ClientError, RuntimeError) as e:
            result.warnings.append("Failed to initialize DynamoDB")
            logger.warning(f"Failed to initialize DynamoDB via {function_name}: {e}")
        return result

    def fetch_client_secret(
        self, outputs: StackOutputs, result: Optional[PostDeployResult] = None
    ) -> PostDeployResult:
        """Read the app client secret from the stack's user pool"""
        result = result if result is not None else PostDeployResult()
        logger.info("Retrieving Cognito client secret...")

        if not outputs.client_id:
            result.warnings.append("Stack has no CognitoClientID output")
            return result

        try:
            pool_id = ""
            paginator = self.cognito.get_paginator("list_user_pools")
            for page in paginator.paginate(MaxResults=60):
                for pool in page.get("UserPools", []):
                    if self.identity.stack_name in pool.get("Name", ""):
                        pool_id = pool["Id"]
                        break
                if pool_id:
                    break

            if not pool_id:
                result.warnings.append("Could not find user pool")
                logger.warning("Could not find user pool")
                return result

            response = self.cognito.describe_user_pool_client(
                UserPoolId=pool_id, ClientId=outputs.client_id
            )
            secret = response.get("UserPoolClient", {}).get("ClientSecret")
        except ClientError as e:
            logger.warning(f"Could not retrieve client secret: {e}")
            secret = None

        if secret:
            result.client_secret = secret
            logger.info("Cognito client secret retrieved")
        else:
            result.warnings.append("Could not retrieve client secret automatically")
        return result

    def find_frontend_instance(self) -> str:
        """Running frontend instance id, empty if there is none"""
        stack = self.identity.stack_name
        try:
            response = self.ec2.describe_instances(
                Filters=[
                    {
                        "Name": "tag:Name",
                        "Values": [f"{stack}-Frontend-Instance", f"{stack}-Frontend"],
                    },
                    {"Name": "instance-state-name", "Values": ["running"]},
                ]
            )
        except ClientError as e:
            logger.warning(f"Could not look up frontend instance: {e}")
            return ""

        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance["InstanceId"]
        return ""

    def configure_frontend(
        self,
        instance_id: str,
        outputs: StackOutputs,
        client_secret: str,
        result: Optional[PostDeployResult] = None,
    ) -> PostDeployResult:
        """Run configure-frontend-env.sh on the frontend instance via SSM"""
        result = result if result is not None else PostDeployResult()

        if not instance_id:
            result.warnings.append("No running frontend instance found")
            return result
        if client_secret == MANUAL_RETRIEVAL_REQUIRED:
            result.warnings.append(
                "Frontend configuration skipped - client secret requires manual retrieval"
            )
            return result

        endpoints = outputs.websocket_endpoints
        arguments = [
            outputs.client_id,
            outputs.auth_domain_url,
            client_secret,
            outputs.callback_url,
            endpoints.get("APIGatewayWSAPI", ""),
            endpoints.get("SignallingServerWSAPI", ""),
            FRONTEND_SESSION_SECRET,
        ]
        command = " ".join([FRONTEND_CONFIGURE_SCRIPT] + [shlex.quote(a) for a in arguments])

        try:
            if self.shell.ping_status(instance_id) != "Online":
                result.warnings.append("SSM not available for frontend configuration")
                return result
            interval, attempts = self.command_poll
            command_result = self.shell.run(
                instance_id,
                [command],
                comment=f"Configure {self.identity.stack_name} frontend",
                max_attempts=attempts,
                interval=interval,
            )
        except ClientError as e:
            logger.warning(f"Frontend configuration failed: {e}")
            result.warnings.append("Frontend configuration failed")
            return result

        if command_result.succeeded:
            result.frontend_configured = True
            logger.info(f"Frontend configured on {instance_id}")
        else:
            result.warnings.append(
                f"Frontend configuration command {command_result.command_id} "
                f"ended with {command_result.status}"
            )
        return result

    def run(
        self,
        outputs: StackOutputs,
        packages_dir: Path,
        frontend_instance_id: str = "",
    ) -> PostDeployResult:
        """Run every post-deploy step in order"""
        result = PostDeployResult()
        self.update_function_code(packages_dir, result)
        self.initialize_tables(result)
        self.fetch_client_secret(outputs, result)
        self.configure_frontend(
            frontend_instance_id or self.find_frontend_instance(),
            outputs,
            result.client_secret,
            result,
        )
        return result
