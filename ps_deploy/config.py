# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Config Store Module

Resolves the deployment identity and build settings from a single
configuration file (JSON or YAML). The file is read-only for every component
except the image publishing step, which merges discovered image ids back in.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import boto3
import yaml

from .exceptions import ConfigurationError
from .models import ROLES, DeploymentIdentity, Role

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "deployment-config.json"

# Config keys holding the published image id for each role
IMAGE_ID_KEYS = {
    Role.SIGNALLING: "signallingServerAMI",
    Role.MATCHMAKER: "matchmakerAMI",
    Role.FRONTEND: "frontendAMI",
}

# Provisioning scripts per role, relative to the user-data directory
USERDATA_SCRIPTS = {
    Role.SIGNALLING: "signalling-server-userdata.sh",
    Role.MATCHMAKER: "matchmaker-userdata.sh",
    Role.FRONTEND: "frontend-userdata.sh",
}


@dataclass(frozen=True)
class BuildSettings:
    """Inputs the image builder needs before launching anything"""

    base_ami_id: str
    build_instance_type: str
    source_tree: Path
    userdata_dir: Path
    vpc_id: str = ""

    def script_for(self, role: Role) -> Path:
        return self.userdata_dir / USERDATA_SCRIPTS[role]


@dataclass(frozen=True)
class OrchestrationSettings:
    """Optional paths and tunables; every field has a default"""

    templates_dir: Path
    lambda_packages_dir: Path
    service_instance_type: str = "t3.medium"
    settle_seconds: int = 60
    health_attempts: int = 30
    health_interval: int = 10


class ConfigStore:
    """Reads deployment-config.json (or a YAML equivalent)"""

    def __init__(self, path: str = DEFAULT_CONFIG_FILE):
        """
        Initialize config store

        Args:
            path: Path to the configuration file
        """
        self.path = Path(path)

    @property
    def base_dir(self) -> Path:
        """Directory relative paths in the config are resolved against"""
        return self.path.resolve().parent

    def _is_yaml(self) -> bool:
        return self.path.suffix.lower() in (".yaml", ".yml")

    def load(self) -> Dict[str, Any]:
        """Load the raw configuration document"""
        if not self.path.is_file():
            raise ConfigurationError(f"Configuration file not found at {self.path}")

        try:
            text = self.path.read_text()
            data = yaml.safe_load(text) if self._is_yaml() else json.loads(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Configuration file {self.path} could not be parsed: {e}"
            ) from e

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file {self.path} must contain a mapping"
            )
        return data

    def resolve(
        self, region: Optional[str] = None, stack_name: Optional[str] = None
    ) -> DeploymentIdentity:
        """
        Resolve the deployment identity

        Command line overrides are applied to the returned value only; the
        file is never rewritten with them.

        Args:
            region: Region override
            stack_name: Stack name override

        Returns:
            DeploymentIdentity
        """
        deployment = self.load().get("deployment") or {}

        region = region or deployment.get("region") or _session_region()
        stack_name = stack_name or deployment.get("stackName")

        if not region:
            raise ConfigurationError(
                "Region could not be determined. Set deployment.region, pass "
                "--region or configure AWS_DEFAULT_REGION"
            )
        _require(stack_name, "deployment.stackName")

        key_pair_name = deployment.get("keyPairName") or f"{stack_name}-keypair"

        identity = DeploymentIdentity(
            region=str(region).strip(),
            stack_name=str(stack_name).strip(),
            key_pair_name=str(key_pair_name).strip(),
        )
        logger.debug(f"Resolved deployment identity: {identity}")
        return identity

    def build_settings(self) -> BuildSettings:
        """Settings required to build images; fails fast on missing fields"""
        infrastructure = self.load().get("infrastructure") or {}

        base_ami = infrastructure.get("baseAmiId")
        instance_type = infrastructure.get("buildInstanceType")
        _require(base_ami, "infrastructure.baseAmiId")
        _require(instance_type, "infrastructure.buildInstanceType")

        return BuildSettings(
            base_ami_id=base_ami,
            build_instance_type=instance_type,
            source_tree=self._path(infrastructure, "sourceTree", "epic-infrastructure"),
            userdata_dir=self._path(infrastructure, "userdataDir", "ami-userdata"),
            vpc_id=infrastructure.get("vpcId") or "",
        )

    def orchestration_settings(self) -> OrchestrationSettings:
        """Optional settings with defaults matching the original tooling"""
        data = self.load()
        infrastructure = data.get("infrastructure") or {}
        orchestration = data.get("orchestration") or {}

        return OrchestrationSettings(
            templates_dir=self._path(
                infrastructure, "templatesDir", "infra/nested-stacks"
            ),
            lambda_packages_dir=self._path(
                infrastructure, "lambdaPackagesDir", "lambda-deployment/packages"
            ),
            service_instance_type=infrastructure.get("serviceInstanceType")
            or "t3.medium",
            settle_seconds=int(orchestration.get("settleSeconds", 60)),
            health_attempts=int(orchestration.get("healthAttempts", 30)),
            health_interval=int(orchestration.get("healthInterval", 10)),
        )

    def image_ids(self) -> Dict[Role, str]:
        """Image ids previously published to the config (may be partial)"""
        infrastructure = self.load().get("infrastructure") or {}
        return {
            role: infrastructure[key]
            for role, key in IMAGE_ID_KEYS.items()
            if infrastructure.get(key)
        }

    def publish_image_ids(self, image_ids: Mapping[Role, str]) -> None:
        """
        Merge image ids into the config file

        Re-reads the file right before writing so unrelated external edits
        are kept; the last writer wins for the image keys themselves.

        Args:
            image_ids: Mapping of role to image id
        """
        data = self.load()
        infrastructure = data.setdefault("infrastructure", {})

        for role in ROLES:
            image_id = image_ids.get(role)
            if image_id:
                infrastructure[IMAGE_ID_KEYS[role]] = image_id

        if self._is_yaml():
            content = yaml.safe_dump(data, sort_keys=False)
        else:
            content = json.dumps(data, indent=2) + "\n"

        _atomic_write(self.path, content)
        logger.info(f"Published image ids to {self.path}")

    def _path(self, section: Dict[str, Any], key: str, default: str) -> Path:
        path = Path(section.get(key) or default)
        return path if path.is_absolute() else self.base_dir / path


def _require(value: Any, name: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigurationError(f"Required configuration field '{name}' is missing")


def _session_region() -> Optional[str]:
    return boto3.session.Session().region_name


def _atomic_write(path: Path, content: str) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=str(path.resolve().parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
