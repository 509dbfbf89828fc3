# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Shared fixtures for ps-deploy tests
"""

import json
from collections import defaultdict
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from ps_deploy.models import DeploymentIdentity


@pytest.fixture
def identity():
    """Deployment identity used across tests"""
    return DeploymentIdentity(
        region="us-west-2", stack_name="ps-test", key_pair_name="ps-test-keypair"
    )


@pytest.fixture
def clients():
    """One MagicMock client per service name"""
    return defaultdict(MagicMock)


@pytest.fixture
def session(clients):
    """boto3 Session double handing out the clients fixture"""
    mock_session = MagicMock()
    mock_session.client.side_effect = lambda service, **kwargs: clients[service]
    return mock_session


@pytest.fixture
def client_error():
    """Factory for botocore ClientError with a given code"""

    def make(code, message="", operation="Operation"):
        return ClientError(
            {"Error": {"Code": code, "Message": message or code}}, operation
        )

    return make


@pytest.fixture
def no_sleep():
    """Skip the delays between poll attempts"""
    with patch("ps_deploy.polling.time.sleep") as mock_sleep:
        yield mock_sleep


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so moto never reaches a real account"""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-west-2")
    monkeypatch.setenv("MOTO_IAM_LOAD_MANAGED_POLICIES", "true")


@pytest.fixture
def config_file(tmp_path):
    """Minimal deployment-config.json with scripts and a source tree"""
    userdata = tmp_path / "ami-userdata"
    userdata.mkdir()
    for name in (
        "signalling-server-userdata.sh",
        "matchmaker-userdata.sh",
        "frontend-userdata.sh",
    ):
        (userdata / name).write_text("#!/bin/bash\necho provisioning\n")

    source = tmp_path / "epic-infrastructure"
    source.mkdir()
    (source / "README.md").write_text("source tree\n")

    path = tmp_path / "deployment-config.json"
    path.write_text(
        json.dumps(
            {
                "deployment": {"region": "us-west-2", "stackName": "ps-test"},
                "infrastructure": {
                    "baseAmiId": "ami-base",
                    "buildInstanceType": "t3.large",
                },
            },
            indent=2,
        )
    )
    return path
