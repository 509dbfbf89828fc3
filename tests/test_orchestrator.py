# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Tests for orchestrator module
"""

import json
import os
import signal
from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import pytest

from ps_deploy.build_env import CreateOutcome
from ps_deploy.config import ConfigStore
from ps_deploy.exceptions import (
    DeploymentError,
    MissingImagesError,
    OrchestrationInterrupted,
    ProvisioningError,
)
from ps_deploy.models import (
    FALLBACK_IMAGE_IDS,
    BuildReport,
    CreateResult,
    DeploymentResult,
    HealthState,
    PostDeployResult,
    Role,
    ServiceInstance,
    TeardownReport,
)
from ps_deploy.orchestrator import (
    Orchestrator,
    RunOptions,
    RunSummary,
    interrupts_as_errors,
)
from ps_deploy.records import ResultStore

BUILT = {
    Role.SIGNALLING: "ami-sig",
    Role.MATCHMAKER: "ami-mm",
    Role.FRONTEND: "ami-fe",
}


def write_config(path, **infrastructure):
    data = json.loads(path.read_text())
    data["infrastructure"].update(infrastructure)
    path.write_text(json.dumps(data))


@pytest.fixture
def orchestrator(config_file, identity, session):
    config = ConfigStore(str(config_file))
    return Orchestrator(
        config, identity, session=session, store=ResultStore(str(config_file.parent))
    )


def deployment(status="CREATE_COMPLETE", outputs=None):
    return DeploymentResult(
        success=True,
        operation="CREATE",
        status=status,
        stack_name="ps-test",
        outputs=outputs or {"FrontendALBDNS": "fe.elb"},
    )


class TestInterrupts:
    """Test signal handling"""

    def test_sigterm_becomes_error(self):
        """Test SIGTERM raises inside the scope"""
        with pytest.raises(OrchestrationInterrupted) as exc_info:
            with interrupts_as_errors():
                os.kill(os.getpid(), signal.SIGTERM)

        assert "SIGTERM" in exc_info.value.message
        assert exc_info.value.stage == "interrupt"

    def test_handlers_restored(self):
        """Test previous handlers are put back on exit"""
        before = signal.getsignal(signal.SIGINT)

        with interrupts_as_errors():
            assert signal.getsignal(signal.SIGINT) is not before

        assert signal.getsignal(signal.SIGINT) is before


class TestResolveImages:
    """Test image source selection"""

    def test_fallback_flag(self, orchestrator):
        """Test the fallback flag wins"""
        image_ids, source = orchestrator.resolve_images(RunOptions(use_fallback_images=True))
        assert image_ids == FALLBACK_IMAGE_IDS
        assert source == "fallback"

    def test_skip_with_published_ids(self, orchestrator, config_file):
        """Test published config ids are used when all three are present"""
        write_config(
            config_file,
            signallingServerAMI="ami-1",
            matchmakerAMI="ami-2",
            frontendAMI="ami-3",
        )

        image_ids, source = orchestrator.resolve_images(
            RunOptions(skip_image_creation=True)
        )

        assert source == "config"
        assert image_ids == {
            Role.SIGNALLING: "ami-1",
            Role.MATCHMAKER: "ami-2",
            Role.FRONTEND: "ami-3",
        }

    def test_skip_with_partial_ids(self, orchestrator, config_file):
        """Test a partial set falls back"""
        write_config(config_file, frontendAMI="ami-3")

        image_ids, source = orchestrator.resolve_images(
            RunOptions(skip_image_creation=True)
        )

        assert source == "fallback"
        assert image_ids == FALLBACK_IMAGE_IDS

    def test_build_needed(self, orchestrator):
        """Test the default run builds images"""
        assert orchestrator.resolve_images(RunOptions()) == (None, "built")


class TestBuildImages:
    """Test the image stage"""

    @contextmanager
    def patched_stage(self, report):
        builder = MagicMock()
        builder.build_all.return_value = report
        manager = MagicMock()
        manager.last_teardown_report = TeardownReport()
        env = MagicMock()

        @contextmanager
        def scope(mgr):
            yield env

        with patch("ps_deploy.orchestrator.ImageBuilder", return_value=builder), patch(
            "ps_deploy.orchestrator.BuildEnvironmentManager", return_value=manager
        ), patch("ps_deploy.orchestrator.ArtifactChannel") as channel, patch(
            "ps_deploy.orchestrator.transient_environment", side_effect=scope
        ):
            yield builder, channel.return_value, env

    def test_success_publishes(self, orchestrator, config_file):
        """Test built ids are recorded and merged into the config"""
        report = BuildReport()
        for role, image_id in BUILT.items():
            report.record_success(role, image_id)

        with self.patched_stage(report) as (builder, channel, env):
            image_ids, _, teardown = orchestrator.build_images(parallel=False)

        assert image_ids == BUILT
        channel.publish.assert_called_once()
        assert builder.build_all.call_args.kwargs["parallel"] is False
        assert orchestrator.config.image_ids() == BUILT
        assert orchestrator.store.read_image_ids() == BUILT
        assert teardown.success

    def test_partial_failure(self, orchestrator):
        """Test a failed role raises and the config is left alone"""
        report = BuildReport()
        report.record_success(Role.SIGNALLING, "ami-sig")
        report.record_success(Role.MATCHMAKER, "ami-mm")
        report.record_failure(Role.FRONTEND, ProvisioningError("npm failed"))

        with self.patched_stage(report):
            with pytest.raises(ProvisioningError) as exc_info:
                orchestrator.build_images()

        assert exc_info.value.stage == "images"
        assert "Frontend" in exc_info.value.message
        assert orchestrator.config.image_ids() == {}
        assert orchestrator.store.read_image_ids() == {
            Role.SIGNALLING: "ami-sig",
            Role.MATCHMAKER: "ami-mm",
        }


class TestValidateImages:
    """Test reused image checks"""

    def test_available(self, orchestrator, clients):
        """Test available images pass"""
        clients["ec2"].describe_images.return_value = {"Images": [{"State": "available"}]}

        orchestrator.validate_images(BUILT)

        assert clients["ec2"].describe_images.call_count == 3

    def test_unusable_images_named(self, orchestrator, clients, client_error):
        """Test missing and pending images are reported together"""
        answers = {
            "ami-sig": {"Images": [{"State": "available"}]},
            "ami-mm": client_error("InvalidAMIID.NotFound"),
            "ami-fe": {"Images": [{"State": "pending"}]},
        }

        def describe(ImageIds):
            answer = answers[ImageIds[0]]
            if isinstance(answer, Exception):
                raise answer
            return answer

        clients["ec2"].describe_images.side_effect = describe

        with pytest.raises(MissingImagesError) as exc_info:
            orchestrator.validate_images(BUILT, stage="instances")

        assert exc_info.value.stage == "instances"
        assert "Matchmaker image ami-mm (not found)" in exc_info.value.message
        assert "Frontend image ami-fe (pending)" in exc_info.value.message
        assert "ami-sig" not in exc_info.value.message

    def test_lookup_error(self, orchestrator, clients, client_error):
        """Test a failed lookup is a provisioning error, not a missing image"""
        clients["ec2"].describe_images.side_effect = client_error("UnauthorizedOperation")

        with pytest.raises(ProvisioningError):
            orchestrator.validate_images(BUILT)


class TestDeployStack:
    """Test the stack stage"""

    def test_missing_images(self, orchestrator):
        """Test a missing image id stops before any stack call"""
        with patch("ps_deploy.orchestrator.StackDeployer") as deployer:
            with pytest.raises(MissingImagesError) as exc_info:
                orchestrator.deploy_stack({Role.SIGNALLING: "ami-sig"})

        assert "Matchmaker" in exc_info.value.message
        deployer.assert_not_called()

    def test_declined_update(self, orchestrator):
        """Test declining the update cancels without touching the stack"""
        orchestrator.confirm_update = MagicMock(return_value=False)

        with patch("ps_deploy.orchestrator.StackDeployer") as deployer, patch(
            "ps_deploy.orchestrator.ensure_key_pair"
        ) as key_pair:
            deployer.return_value.stack_exists.return_value = True
            result, bucket = orchestrator.deploy_stack(BUILT)

        assert result is None
        assert bucket == ""
        orchestrator.confirm_update.assert_called_once_with("ps-test")
        key_pair.assert_not_called()
        deployer.return_value.deploy.assert_not_called()

    def test_force_update_skips_prompt(self, orchestrator, config_file):
        """Test force_update deploys without asking and reuses the bucket"""
        orchestrator.confirm_update = MagicMock(return_value=False)
        (config_file.parent / "deployment-info.json").write_text(
            json.dumps({"stack_name": "ps-test", "s3_bucket": "ps-test-templates-old"})
        )

        with patch("ps_deploy.orchestrator.StackDeployer") as deployer, patch(
            "ps_deploy.orchestrator.ensure_key_pair"
        ):
            instance = deployer.return_value
            instance.stage_templates.return_value = MagicMock(
                bucket="ps-test-templates-old",
                master_template=config_file.parent / "master.yaml",
            )
            instance.deploy.return_value = deployment()
            result, bucket = orchestrator.deploy_stack(
                BUILT, RunOptions(force_update=True, stack_timeout=60, stack_interval=5)
            )

        assert result.success
        assert bucket == "ps-test-templates-old"
        orchestrator.confirm_update.assert_not_called()
        assert instance.stage_templates.call_args.kwargs["existing_bucket"] == (
            "ps-test-templates-old"
        )
        request = instance.deploy.call_args.args[0]
        assert request.parameters["FrontEndAMI"] == "ami-fe"
        assert request.parameters["NestedStacksS3Bucket"] == "ps-test-templates-old"
        assert instance.deploy.call_args.kwargs == {"timeout": 60, "interval": 5}

    def test_key_pair_failure_stops_deploy(self, orchestrator, client_error):
        """Test a key pair that cannot be ensured fails before staging"""
        denied = client_error("UnauthorizedOperation")

        with patch("ps_deploy.orchestrator.StackDeployer") as deployer, patch(
            "ps_deploy.orchestrator.ensure_key_pair",
            return_value=CreateOutcome(CreateResult.FAILED, denied),
        ):
            deployer.return_value.stack_exists.return_value = False
            with pytest.raises(ProvisioningError) as exc_info:
                orchestrator.deploy_stack(BUILT)

        assert exc_info.value.stage == "stack"
        assert "ps-test-keypair" in exc_info.value.message
        assert exc_info.value.__cause__ is denied
        deployer.return_value.stage_templates.assert_not_called()
        deployer.return_value.deploy.assert_not_called()


class TestRun:
    """Test stage wiring"""

    def patch_stages(self, orchestrator, deploy_result=None):
        stages = MagicMock()
        stages.build_images.return_value = (BUILT, BuildReport(), TeardownReport())
        stages.deploy_stack.return_value = (
            deploy_result if deploy_result is not None else deployment(),
            "ps-test-templates-1",
        )
        stages.post_deploy.return_value = PostDeployResult()
        stages.deploy_instances.return_value = [ServiceInstance(Role.FRONTEND, "i-fe")]
        for name in (
            "build_images",
            "deploy_stack",
            "post_deploy",
            "deploy_instances",
            "configure_frontend",
            "write_records",
        ):
            setattr(orchestrator, name, getattr(stages, name))
        return stages

    def test_full_run_order(self, orchestrator):
        """Test images, stack, post-deploy, instances, frontend, records"""
        stages = self.patch_stages(orchestrator)

        summary = orchestrator.run(RunOptions(settle_seconds=5))

        assert [c[0] for c in stages.mock_calls] == [
            "build_images",
            "deploy_stack",
            "post_deploy",
            "deploy_instances",
            "configure_frontend",
            "write_records",
        ]
        assert summary.image_ids == BUILT
        assert summary.image_source == "built"
        assert summary.templates_bucket == "ps-test-templates-1"
        assert stages.deploy_instances.call_args.args[2] == 5
        assert not summary.cancelled

    def test_fallback_skips_build_and_instances(self, orchestrator):
        """Test fallback images skip the build; skip_instances skips bring-up"""
        stages = self.patch_stages(orchestrator)

        summary = orchestrator.run(
            RunOptions(use_fallback_images=True, skip_instances=True)
        )

        stages.build_images.assert_not_called()
        stages.deploy_instances.assert_not_called()
        assert summary.image_source == "fallback"
        stages.configure_frontend.assert_called_once()

    def test_cancelled_update(self, orchestrator):
        """Test a declined update ends the run without records"""
        stages = self.patch_stages(orchestrator)
        stages.deploy_stack.return_value = (None, "")

        summary = orchestrator.run(RunOptions(use_fallback_images=True))

        assert summary.cancelled
        stages.post_deploy.assert_not_called()
        stages.write_records.assert_not_called()

    def test_published_images_are_checked(self, orchestrator, config_file, clients):
        """Test reused config images are validated before the stack stage"""
        write_config(
            config_file,
            signallingServerAMI="ami-1",
            matchmakerAMI="ami-2",
            frontendAMI="ami-3",
        )
        clients["ec2"].describe_images.return_value = {"Images": []}
        stages = self.patch_stages(orchestrator)

        with pytest.raises(MissingImagesError) as exc_info:
            orchestrator.run(RunOptions(skip_image_creation=True))

        assert "ami-1" in exc_info.value.message
        stages.deploy_stack.assert_not_called()

    def test_build_failure_stops_run(self, orchestrator):
        """Test an image failure propagates before the stack stage"""
        stages = self.patch_stages(orchestrator)
        stages.build_images.side_effect = ProvisioningError("boom", stage="images")

        with pytest.raises(ProvisioningError):
            orchestrator.run()
        stages.deploy_stack.assert_not_called()


class TestRunInstances:
    """Test the standalone instance stage"""

    def test_requires_images(self, orchestrator):
        """Test unpublished images stop the stage"""
        with pytest.raises(MissingImagesError) as exc_info:
            orchestrator.run_instances()
        assert exc_info.value.stage == "instances"

    def test_requires_stack(self, orchestrator):
        """Test a missing stack stops the stage"""
        with patch("ps_deploy.orchestrator.StackDeployer") as deployer:
            deployer.return_value.stack_status.return_value = None
            with pytest.raises(DeploymentError) as exc_info:
                orchestrator.run_instances(RunOptions(use_fallback_images=True))

        assert "does not exist" in exc_info.value.message

    def test_brings_up_against_stack(self, orchestrator, config_file):
        """Test instances come up and records are written"""
        instance = ServiceInstance(Role.FRONTEND, "i-fe")
        instance.transition(HealthState.INITIAL)
        instance.transition(HealthState.HEALTHY)

        with patch("ps_deploy.orchestrator.StackDeployer") as deployer, patch(
            "ps_deploy.orchestrator.PostDeploySteps"
        ) as steps, patch.object(
            orchestrator, "deploy_instances", return_value=[instance]
        ):
            deployer.return_value.stack_status.return_value = "UPDATE_COMPLETE"
            deployer.return_value.get_outputs.return_value = {"FrontendALBDNS": "fe.elb"}
            steps.return_value.fetch_client_secret.return_value = PostDeployResult(
                client_secret="s3cret"
            )
            summary = orchestrator.run_instances(RunOptions(use_fallback_images=True))

        assert summary.deployment.operation == "READ"
        assert summary.instances == [instance]
        steps.return_value.configure_frontend.assert_called_once_with(
            "i-fe", deployer.return_value.get_outputs.return_value, "s3cret",
            summary.post_deploy,
        )
        info = json.loads((config_file.parent / "deployment-info.json").read_text())
        assert info["instances"][0]["health"] == "healthy"
        assert info["outputs"]["cognito_client_secret"] == "s3cret"


class TestRunSummary:
    """Test summary helpers"""

    def test_warnings(self, identity):
        """Test post-deploy and instance warnings are combined"""
        timed_out = ServiceInstance(Role.MATCHMAKER, "i-mm")
        timed_out.transition(HealthState.INITIAL)
        timed_out.transition(HealthState.TIMED_OUT, "not healthy")
        summary = RunSummary(
            identity=identity,
            post_deploy=PostDeployResult(warnings=["Failed to initialize DynamoDB"]),
            instances=[timed_out],
        )

        assert summary.warnings == [
            "Failed to initialize DynamoDB",
            "Matchmaker i-mm: not healthy",
        ]
        assert dict(summary.outputs) == {}
