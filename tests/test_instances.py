# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Tests for instance bring-up module
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from ps_deploy.config import OrchestrationSettings
from ps_deploy.exceptions import ProvisioningError
from ps_deploy.instances import InstanceBringUp, NetworkPlacement
from ps_deploy.models import ROLES, HealthState, Role, StackOutputs

IMAGE_IDS = {
    Role.SIGNALLING: "ami-sig",
    Role.MATCHMAKER: "ami-mm",
    Role.FRONTEND: "ami-fe",
}

OUTPUTS = StackOutputs(
    {
        "PrivateSubnet1": "subnet-private",
        "InstanceSecurityGroupId": "sg-instances",
        "SignallingTargetGroupArn": "arn:tg:Signalling",
        "MatchmakerTargetGroupArn": "arn:tg:Matchmaker",
        "FrontendTargetGroupArn": "arn:tg:Frontend",
    }
)


def make_settings(settle_seconds=0, health_attempts=3):
    return OrchestrationSettings(
        templates_dir=Path("templates"),
        lambda_packages_dir=Path("lambda-packages"),
        settle_seconds=settle_seconds,
        health_attempts=health_attempts,
        health_interval=1,
    )


@pytest.fixture
def running_clients(clients):
    ec2 = clients["ec2"]
    ec2.run_instances.side_effect = lambda **kwargs: {
        "Instances": [
            {"InstanceId": f"i-{kwargs['TagSpecifications'][0]['Tags'][0]['Value']}"}
        ]
    }
    ec2.describe_instances.return_value = {
        "Reservations": [
            {"Instances": [{"State": {"Name": "running"}, "PrivateIpAddress": "10.0.1.5"}]}
        ]
    }
    return clients


def target_health(states):
    """describe_target_health double answering per target group"""

    def describe(TargetGroupArn, Targets):
        state = states[TargetGroupArn]
        if callable(state):
            state = state()
        return {"TargetHealthDescriptions": [{"TargetHealth": {"State": state}}]}

    return describe


class TestPlacement:
    """Test subnet and security group resolution"""

    def test_from_outputs(self, identity, session, clients):
        """Test stack outputs are used when present"""
        bring_up = InstanceBringUp(identity, make_settings(), session=session)

        placement = bring_up.resolve_placement(OUTPUTS)

        assert placement == NetworkPlacement("subnet-private", ("sg-instances",))
        clients["ec2"].describe_subnets.assert_not_called()

    def test_tag_lookup_fallback(self, identity, session, clients):
        """Test the private subnet is found by tag when not an output"""
        clients["ec2"].describe_subnets.return_value = {
            "Subnets": [{"SubnetId": "subnet-tagged"}]
        }
        bring_up = InstanceBringUp(identity, make_settings(), session=session)

        placement = bring_up.resolve_placement(StackOutputs())

        assert placement.subnet_id == "subnet-tagged"
        filters = clients["ec2"].describe_subnets.call_args.kwargs["Filters"]
        assert {"Name": "tag:StackName", "Values": ["ps-test"]} in filters

    def test_no_subnet(self, identity, session, clients):
        """Test a missing subnet stops bring-up"""
        clients["ec2"].describe_subnets.return_value = {"Subnets": []}
        bring_up = InstanceBringUp(identity, make_settings(), session=session)

        with pytest.raises(ProvisioningError) as exc_info:
            bring_up.resolve_placement(StackOutputs())
        assert exc_info.value.stage == "instances"


class TestLaunch:
    """Test service instance launch"""

    def test_launch_params(self, identity, session, running_clients):
        """Test type, key pair, subnet and tags"""
        bring_up = InstanceBringUp(identity, make_settings(), session=session)

        instance = bring_up.launch_service_instance(
            Role.MATCHMAKER, "ami-mm", NetworkPlacement("subnet-1", ("sg-1",))
        )

        assert instance.instance_id == "i-ps-test-Matchmaker"
        assert instance.health_state == HealthState.UNKNOWN
        kwargs = running_clients["ec2"].run_instances.call_args.kwargs
        assert kwargs["InstanceType"] == "t3.medium"
        assert kwargs["KeyName"] == "ps-test-keypair"
        assert kwargs["SubnetId"] == "subnet-1"
        assert kwargs["SecurityGroupIds"] == ["sg-1"]
        tags = {t["Key"]: t["Value"] for t in kwargs["TagSpecifications"][0]["Tags"]}
        assert tags["type"] == "matchmaker"

    def test_launch_template(self, identity, session, running_clients):
        """Test a stack launch template replaces type and key"""
        bring_up = InstanceBringUp(identity, make_settings(), session=session)

        bring_up.launch_service_instance(
            Role.FRONTEND, "ami-fe", NetworkPlacement("subnet-1"), launch_template="fe-lt"
        )

        kwargs = running_clients["ec2"].run_instances.call_args.kwargs
        assert kwargs["LaunchTemplate"] == {"LaunchTemplateName": "fe-lt"}
        assert "InstanceType" not in kwargs
        assert "SecurityGroupIds" not in kwargs

    def test_launch_failure(self, identity, session, clients, client_error):
        """Test a launch error is a provisioning error"""
        clients["ec2"].run_instances.side_effect = client_error("InvalidAMIID.NotFound")
        bring_up = InstanceBringUp(identity, make_settings(), session=session)

        with pytest.raises(ProvisioningError):
            bring_up.launch_service_instance(
                Role.FRONTEND, "ami-gone", NetworkPlacement("subnet-1")
            )


class TestTargetGroups:
    """Test target group resolution"""

    def test_lookup_by_name(self, identity, session, clients):
        """Test groups are matched by stack and role name"""
        clients["elbv2"].get_paginator.return_value.paginate.return_value = [
            {
                "TargetGroups": [
                    {"TargetGroupName": "other-Frontend", "TargetGroupArn": "arn:other"},
                    {"TargetGroupName": "ps-test-frontend-tg", "TargetGroupArn": "arn:fe"},
                ]
            }
        ]
        bring_up = InstanceBringUp(identity, make_settings(), session=session)

        assert bring_up.resolve_target_group(Role.FRONTEND, StackOutputs()) == "arn:fe"
        assert bring_up.resolve_target_group(Role.MATCHMAKER, StackOutputs()) == ""


class TestPollHealth:
    """Test health polling"""

    def test_healthy(self, identity, session, clients, no_sleep):
        """Test healthy is reached after initial states"""
        clients["elbv2"].describe_target_health.side_effect = [
            {"TargetHealthDescriptions": [{"TargetHealth": {"State": "initial"}}]},
            {"TargetHealthDescriptions": [{"TargetHealth": {"State": "healthy"}}]},
        ]
        bring_up = InstanceBringUp(identity, make_settings(), session=session)

        assert bring_up.poll_health("arn:tg", "i-1", max_attempts=5, interval=1) == (
            HealthState.HEALTHY
        )

    def test_timeout_does_not_raise(self, identity, session, clients, no_sleep):
        """Test exhaustion is a TIMED_OUT result"""
        clients["elbv2"].describe_target_health.return_value = {
            "TargetHealthDescriptions": []
        }
        bring_up = InstanceBringUp(identity, make_settings(), session=session)

        state = bring_up.poll_health("arn:tg", "i-1", max_attempts=3, interval=1)

        assert state == HealthState.TIMED_OUT
        assert clients["elbv2"].describe_target_health.call_count == 3


class TestBringUp:
    """Full bring-up"""

    def test_all_healthy(self, identity, session, running_clients, no_sleep):
        """Test every role is launched, registered and healthy"""
        running_clients["elbv2"].describe_target_health.side_effect = target_health(
            {arn: "healthy" for arn in OUTPUTS.values() if arn.startswith("arn:")}
        )
        bring_up = InstanceBringUp(identity, make_settings(), session=session)

        instances = bring_up.bring_up(IMAGE_IDS, OUTPUTS)

        assert [i.role for i in instances] == list(ROLES)
        assert all(i.health_state == HealthState.HEALTHY for i in instances)
        assert all(i.address == "10.0.1.5" for i in instances)
        assert running_clients["elbv2"].register_targets.call_count == 3

    def test_timeout_is_soft(self, identity, session, running_clients, no_sleep):
        """Test an unhealthy frontend is recorded without stopping the others"""
        running_clients["elbv2"].describe_target_health.side_effect = target_health(
            {
                "arn:tg:Signalling": "healthy",
                "arn:tg:Matchmaker": "healthy",
                "arn:tg:Frontend": "unhealthy",
            }
        )
        bring_up = InstanceBringUp(identity, make_settings(), session=session)

        instances = {i.role: i for i in bring_up.bring_up(IMAGE_IDS, OUTPUTS)}

        frontend = instances[Role.FRONTEND]
        assert frontend.health_state == HealthState.TIMED_OUT
        assert frontend.is_soft_failure
        assert "did not become healthy after 3 attempts" in frontend.detail
        assert instances[Role.SIGNALLING].health_state == HealthState.HEALTHY

    def test_settle_delay(self, identity, session, running_clients, no_sleep):
        """Test the configured settle delay runs once before registration"""
        running_clients["elbv2"].describe_target_health.side_effect = target_health(
            {arn: "healthy" for arn in OUTPUTS.values() if arn.startswith("arn:")}
        )
        bring_up = InstanceBringUp(identity, make_settings(settle_seconds=45), session=session)

        with patch("ps_deploy.instances.time.sleep") as settle:
            bring_up.bring_up(IMAGE_IDS, OUTPUTS)

        settle.assert_called_once_with(45)

    def test_unregistered_instance(self, identity, session, running_clients, no_sleep):
        """Test a role without a target group is left unregistered"""
        running_clients["elbv2"].get_paginator.return_value.paginate.return_value = [
            {"TargetGroups": []}
        ]
        outputs = StackOutputs({"PrivateSubnet1": "subnet-private"})
        bring_up = InstanceBringUp(identity, make_settings(), session=session)

        instances = bring_up.bring_up({Role.MATCHMAKER: "ami-mm"}, outputs, roles=[Role.MATCHMAKER])

        assert not instances[0].registered
        assert instances[0].health_state == HealthState.INITIAL
        assert "not registered" in instances[0].detail
        running_clients["elbv2"].register_targets.assert_not_called()
