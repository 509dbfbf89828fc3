# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Result Records Module

Persists the terminal outputs of a run (deployment info, image ids, test
credentials) for the operator and for later cleanup and status commands.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from .models import (
    DeploymentIdentity,
    PostDeployResult,
    Role,
    ServiceInstance,
    StackOutputs,
    TeardownReport,
)

logger = logging.getLogger(__name__)

DEPLOYMENT_INFO_FILE = "deployment-info.json"
IMAGE_IDS_FILE = "ami-ids.json"
USER_CREDENTIALS_FILE = "user-credentials.json"

RECORD_FILES = (DEPLOYMENT_INFO_FILE, USER_CREDENTIALS_FILE, IMAGE_IDS_FILE)

# Older records used the component directory name for the signalling role
_LEGACY_ROLE_KEYS = {"SignallingWebServer": Role.SIGNALLING}


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ResultStore:
    """Reads and writes the JSON result records in one directory"""

    def __init__(self, directory: str = "."):
        self.directory = Path(directory)

    def _file(self, name: str) -> Path:
        return self.directory / name

    def _write(self, name: str, data: Dict) -> Path:
        path = self._file(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2) + "\n")
        logger.info(f"Saved {path}")
        return path

    def _read(self, name: str) -> Optional[Dict]:
        path = self._file(name)
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable record {path}: {e}")
            return None

    def write_image_ids(
        self, identity: DeploymentIdentity, image_ids: Mapping[Role, str]
    ) -> Path:
        """Write ami-ids.json"""
        return self._write(
            IMAGE_IDS_FILE,
            {
                "creation_date": _utc_now(),
                "region": identity.region,
                "stack_name": identity.stack_name,
                "amis": {role.value: image_id for role, image_id in image_ids.items()},
            },
        )

    def read_image_ids(self) -> Dict[Role, str]:
        """Image ids from ami-ids.json, empty when the record is absent"""
        data = self._read(IMAGE_IDS_FILE) or {}
        image_ids = {}
        for key, image_id in (data.get("amis") or {}).items():
            role = _LEGACY_ROLE_KEYS.get(key)
            if role is None:
                try:
                    role = Role(key)
                except ValueError:
                    logger.warning(f"Unknown role in {IMAGE_IDS_FILE}: {key}")
                    continue
            if image_id and image_id != "null":
                image_ids[role] = image_id
        return image_ids

    def write_deployment_info(
        self,
        identity: DeploymentIdentity,
        outputs: StackOutputs,
        image_ids: Mapping[Role, str],
        templates_bucket: str = "",
        post_deploy: Optional[PostDeployResult] = None,
        instances: Iterable[ServiceInstance] = (),
    ) -> Path:
        """Write deployment-info.json"""
        post_deploy = post_deploy or PostDeployResult()
        return self._write(
            DEPLOYMENT_INFO_FILE,
            {
                "deployment_date": _utc_now(),
                "region": identity.region,
                "stack_name": identity.stack_name,
                "architecture": "modular_nested_stacks",
                "s3_bucket": templates_bucket,
                "outputs": {
                    "cloudfront_domain": outputs.cloudfront_domain,
                    "cognito_client_id": outputs.client_id,
                    "cognito_domain_url": outputs.auth_domain_url,
                    "cognito_callback_url": outputs.callback_url,
                    "cognito_client_secret": post_deploy.client_secret,
                    "websocket_endpoints": outputs.websocket_endpoints,
                    "load_balancers": outputs.load_balancer_dns_names,
                    "raw": dict(outputs),
                },
                "amis": {role.value: image_id for role, image_id in image_ids.items()},
                "instances": [
                    {
                        "role": instance.role.value,
                        "instance_id": instance.instance_id,
                        "address": instance.address,
                        "target_group_arn": instance.target_group_arn,
                        "health": instance.health_state.value,
                    }
                    for instance in instances
                ],
            },
        )

    def read_deployment_info(self) -> Optional[Dict]:
        return self._read(DEPLOYMENT_INFO_FILE)

    def existing_records(self) -> List[Path]:
        return [self._file(name) for name in RECORD_FILES if self._file(name).exists()]

    def remove_records(self, report: Optional[TeardownReport] = None) -> TeardownReport:
        """Delete every local record; missing files are skipped"""
        report = report if report is not None else TeardownReport()
        for name in RECORD_FILES:
            path = self._file(name)
            if not path.exists():
                report.skipped("remove-record", name, "not present")
                continue
            try:
                path.unlink()
                report.deleted("remove-record", name)
                logger.info(f"Removed: {name}")
            except OSError as e:
                logger.error(f"Error removing {path}: {e}")
                report.failed("remove-record", name, str(e))
        return report
