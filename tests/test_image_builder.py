# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Tests for image builder module
"""

from unittest.mock import patch

import pytest

from ps_deploy.config import BuildSettings
from ps_deploy.exceptions import (
    ConfigurationError,
    ImageTimeoutError,
    OrchestrationInterrupted,
    ProvisioningError,
    UnreachableError,
)
from ps_deploy.image_builder import ImageBuilder
from ps_deploy.models import ROLES, ArtifactReference, Role, TransientEnvironment


@pytest.fixture
def settings(config_file):
    base = config_file.parent
    return BuildSettings(
        base_ami_id="ami-base",
        build_instance_type="t3.large",
        source_tree=base / "epic-infrastructure",
        userdata_dir=base / "ami-userdata",
    )


@pytest.fixture
def env():
    return TransientEnvironment(
        security_group_id="sg-build",
        staging_bucket="ps-test-deploy-1-abcdef12",
        instance_profile_name="ps-test-ami-builder-profile",
        role_name="ps-test-ami-builder-role",
        vpc_id="",
    )


@pytest.fixture
def reference():
    return ArtifactReference(bucket="ps-test-deploy-1-abcdef12", prefix="epic-infrastructure")


@pytest.fixture
def healthy_clients(clients):
    """Clients for a build where every step succeeds"""
    ec2, ssm = clients["ec2"], clients["ssm"]
    ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-build"}]}
    ec2.describe_instances.return_value = {
        "Reservations": [
            {
                "Instances": [
                    {"State": {"Name": "running"}, "PublicIpAddress": "203.0.113.10"}
                ]
            }
        ]
    }
    ec2.create_image.side_effect = lambda **kwargs: {
        "ImageId": f"ami-{kwargs['Name'].split('-')[2].lower()}"
    }
    ec2.describe_images.return_value = {"Images": [{"State": "available"}]}
    ssm.describe_instance_information.return_value = {
        "InstanceInformationList": [{"PingStatus": "Online"}]
    }
    ssm.send_command.return_value = {"Command": {"CommandId": "cmd-1"}}
    ssm.get_command_invocation.return_value = {
        "Status": "Success",
        "StandardOutputContent": "done",
        "StandardErrorContent": "",
    }
    return clients


@pytest.fixture
def builder(identity, settings, session, healthy_clients, no_sleep):
    return ImageBuilder(identity, settings, session=session)


class TestValidate:
    """Fail-fast checks before launching"""

    def test_missing_script(self, builder, settings):
        """Test a missing provisioning script stops the build"""
        settings.script_for(Role.FRONTEND).unlink()

        with pytest.raises(ConfigurationError) as exc_info:
            builder.build_all(builder.targets(ROLES), None, None)

        assert "frontend-userdata.sh" in exc_info.value.message
        builder.ec2.run_instances.assert_not_called()

    def test_missing_base_ami(self, identity, session, healthy_clients, settings):
        """Test the base image is required"""
        settings = BuildSettings("", "t3.large", settings.source_tree, settings.userdata_dir)
        builder = ImageBuilder(identity, settings, session=session)

        with pytest.raises(ConfigurationError):
            builder.validate(builder.targets(ROLES))


class TestBuild:
    """Single-target build steps"""

    def test_build_produces_image(self, builder, env, reference):
        """Test launch, provision and snapshot produce an image"""
        target = builder.targets([Role.MATCHMAKER])[0]

        image_id = builder.build(target, env, reference)

        assert image_id == "ami-matchmaker"
        assert target.produced_image_id == "ami-matchmaker"
        builder.ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-build"])

        launch = builder.ec2.run_instances.call_args.kwargs
        assert launch["ImageId"] == "ami-base"
        assert launch["SecurityGroupIds"] == ["sg-build"]
        assert launch["IamInstanceProfile"] == {"Name": "ps-test-ami-builder-profile"}
        tags = {t["Key"]: t["Value"] for t in launch["TagSpecifications"][0]["Tags"]}
        assert tags["Purpose"] == "AMI-Creation"
        assert tags["StackName"] == "ps-test"

        image = builder.ec2.create_image.call_args.kwargs
        assert image["NoReboot"] is True
        assert image["Name"].startswith("ps-test-Matchmaker-")

    def test_provisioning_fetches_source_and_exports(self, builder, env, reference):
        """Test the command syncs the tree and exports the build variables"""
        target = builder.targets([Role.SIGNALLING])[0]

        builder.build(target, env, reference)

        params = builder.ssm.send_command.call_args.kwargs
        assert params["DocumentName"] == "AWS-RunShellScript"
        commands = params["Parameters"]["commands"]
        assert commands[1].startswith(
            "aws s3 sync s3://ps-test-deploy-1-abcdef12/epic-infrastructure/"
        )
        assert "export S3_BUCKET=ps-test-deploy-1-abcdef12" in commands[2]
        assert "export COMPONENT_NAME=SignallingWebServer" in commands[2]
        assert "echo provisioning" in commands[2]

    def test_vpc_launch_uses_network_interface(self, builder, reference):
        """Test a configured VPC launches into one of its subnets"""
        builder.ec2.describe_subnets.return_value = {
            "Subnets": [
                {"SubnetId": "subnet-private", "MapPublicIpOnLaunch": False},
                {"SubnetId": "subnet-public", "MapPublicIpOnLaunch": True},
            ]
        }
        env = TransientEnvironment("sg-build", "bucket", "profile", "role", "vpc-1")

        builder.launch_build_instance(builder.targets([Role.FRONTEND])[0], env)

        launch = builder.ec2.run_instances.call_args.kwargs
        assert "SecurityGroupIds" not in launch
        assert launch["NetworkInterfaces"][0]["SubnetId"] == "subnet-public"
        assert launch["NetworkInterfaces"][0]["Groups"] == ["sg-build"]

    def test_launch_retries_profile_propagation(
        self, builder, env, client_error
    ):
        """Test a not-yet-visible instance profile is retried"""
        builder.ec2.run_instances.side_effect = [
            client_error("InvalidParameterValue", "Invalid IAM Instance Profile name"),
            {"Instances": [{"InstanceId": "i-second"}]},
        ]

        instance_id = builder.launch_build_instance(builder.targets([Role.FRONTEND])[0], env)

        assert instance_id == "i-second"
        assert builder.ec2.run_instances.call_count == 2

    def test_launch_other_error(self, builder, env, client_error):
        """Test other launch errors fail immediately"""
        builder.ec2.run_instances.side_effect = client_error("InsufficientInstanceCapacity")

        with pytest.raises(ProvisioningError):
            builder.launch_build_instance(builder.targets([Role.FRONTEND])[0], env)
        assert builder.ec2.run_instances.call_count == 1

    def test_unreachable_terminates_instance(self, builder, env, reference):
        """Test an instance that never registers with SSM is terminated"""
        builder.ssm.describe_instance_information.return_value = {
            "InstanceInformationList": []
        }
        builder.reachable_poll = (1, 3)

        with pytest.raises(UnreachableError):
            builder.build(builder.targets([Role.FRONTEND])[0], env, reference)

        builder.ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-build"])
        builder.ssm.send_command.assert_not_called()

    def test_instance_terminated_during_boot(self, builder, env, reference):
        """Test a build instance that dies while booting is unreachable"""
        builder.ec2.describe_instances.return_value = {
            "Reservations": [{"Instances": [{"State": {"Name": "terminated"}}]}]
        }

        with pytest.raises(UnreachableError):
            builder.build(builder.targets([Role.FRONTEND])[0], env, reference)

    def test_failed_provisioning(self, builder, env, reference):
        """Test a non-zero provisioning script is a provisioning error"""
        builder.ssm.get_command_invocation.return_value = {
            "Status": "Failed",
            "StandardErrorContent": "npm ERR!",
        }

        with pytest.raises(ProvisioningError):
            builder.build(builder.targets([Role.FRONTEND])[0], env, reference)
        builder.ec2.create_image.assert_not_called()
        builder.ec2.terminate_instances.assert_called_once()

    def test_image_failed_state(self, builder, env, reference):
        """Test an image that fails is reported as an image error"""
        builder.ec2.describe_images.return_value = {"Images": [{"State": "failed"}]}

        with pytest.raises(ImageTimeoutError):
            builder.build(builder.targets([Role.FRONTEND])[0], env, reference)

    def test_image_never_available(self, builder, env, reference):
        """Test exhausting the image poll is a timeout"""
        builder.ec2.describe_images.return_value = {"Images": [{"State": "pending"}]}
        builder.image_poll = (1, 4)

        with pytest.raises(ImageTimeoutError) as exc_info:
            builder.build(builder.targets([Role.FRONTEND])[0], env, reference)
        assert "pending" in exc_info.value.message

    def test_cancelled_before_launch(self, builder, env, reference):
        """Test a cancelled builder launches nothing"""
        builder.cancelled.set()

        with pytest.raises(OrchestrationInterrupted):
            builder.build(builder.targets([Role.FRONTEND])[0], env, reference)
        builder.ec2.run_instances.assert_not_called()


class TestBuildAll:
    """Multi-target builds"""

    @pytest.mark.parametrize("parallel", [True, False])
    def test_all_roles_succeed(self, builder, env, reference, parallel):
        """Test one image per role, sequential or parallel"""
        report = builder.build_all(builder.targets(ROLES), env, reference, parallel=parallel)

        assert report.success
        assert report.image_ids == {
            Role.SIGNALLING: "ami-signallingwebserver",
            Role.MATCHMAKER: "ami-matchmaker",
            Role.FRONTEND: "ami-frontend",
        }
        assert builder.ec2.terminate_instances.call_count == 3

    def test_one_failure_does_not_stop_others(self, builder, env, reference):
        """Test a failing role is recorded while the others finish"""
        real_provision = builder.provision_instance

        def provision(instance_id, target, env_, reference_):
            if target.role == Role.FRONTEND:
                raise ProvisioningError("frontend script failed")
            return real_provision(instance_id, target, env_, reference_)

        with patch.object(builder, "provision_instance", side_effect=provision):
            report = builder.build_all(builder.targets(ROLES), env, reference)

        assert not report.success
        assert report.missing_roles == [Role.FRONTEND]
        assert isinstance(report.errors[Role.FRONTEND], ProvisioningError)
        assert set(report.image_ids) == {Role.SIGNALLING, Role.MATCHMAKER}
        assert builder.ec2.terminate_instances.call_count == 3

    def test_interrupt_stops_sequential_builds(self, builder, env, reference):
        """Test an interrupt during the first role launches nothing more"""
        builder.ssm.describe_instance_information.side_effect = OrchestrationInterrupted(
            "Received SIGINT"
        )

        with pytest.raises(OrchestrationInterrupted):
            builder.build_all(builder.targets(ROLES), env, reference, parallel=False)

        assert builder.ec2.run_instances.call_count == 1
        builder.ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-build"])
        assert builder.cancelled.is_set()

    def test_interrupt_propagates_from_parallel_builds(self, builder, env, reference):
        """Test an interrupt in a worker is raised once the pool joins"""
        builder.ssm.describe_instance_information.side_effect = OrchestrationInterrupted(
            "Received SIGINT"
        )

        with pytest.raises(OrchestrationInterrupted):
            builder.build_all(builder.targets(ROLES), env, reference)

        assert builder.cancelled.is_set()
        ec2 = builder.ec2
        assert ec2.terminate_instances.call_count == ec2.run_instances.call_count
