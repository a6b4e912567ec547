"""Unit tests for the ProvisioningPipeline — stage order, failures, update, cancel."""

from __future__ import annotations

from pathlib import Path

import pytest

from envforge.core.pipeline import ProvisioningPipeline, StageFailure, _Run, validate_names
from envforge.core.registry import NotFoundError, NotReadyForUpdateError
from envforge.models.artifacts import ArtifactRef
from envforge.models.environments import EnvironmentState


def _transitions(pipeline: ProvisioningPipeline, run_id: str) -> list[str]:
    return [e.state_transition for e in pipeline.ledger.get_run_entries(run_id)]


class TestInstall:
    def test_reaches_ready(self, pipeline: ProvisioningPipeline, fake_runner):
        outcome = pipeline.install("dev", "alice")
        assert outcome.ok
        assert outcome.state == EnvironmentState.READY
        assert [r.stage_id for r in outcome.stage_results] == [
            "verify_artifact", "instantiate", "bootstrap", "configure",
        ]
        env = pipeline.registry.require("dev")
        assert env.state == EnvironmentState.READY
        assert env.default_user == "alice"
        assert "dev" in fake_runner.instances

    def test_transitions_are_strictly_forward(self, pipeline: ProvisioningPipeline):
        outcome = pipeline.install("dev", "alice")
        assert _transitions(pipeline, outcome.run_id) == [
            "none->requested",
            "requested->artifact_verifying",
            "artifact_verifying->artifact_verified",
            "artifact_verified->instantiating",
            "instantiating->instantiated",
            "instantiated->bootstrapping",
            "bootstrapping->configuring",
            "configuring->ready",
        ]
        assert pipeline.ledger.verify_chain(outcome.run_id)

    def test_default_storage_path(self, pipeline: ProvisioningPipeline, tmp_path: Path, fake_runner):
        pipeline.install("dev", "alice")
        assert pipeline.registry.require("dev").storage_path == tmp_path / "instances" / "dev"
        assert fake_runner.index_of(f"--import dev {tmp_path / 'instances' / 'dev'}") >= 0

    def test_bootstrap_runs_commands_in_order(self, pipeline: ProvisioningPipeline, fake_runner):
        pipeline.install("dev", "alice")
        positions = [fake_runner.index_of(cmd) for cmd in pipeline.config.bootstrap_commands]
        assert all(p >= 0 for p in positions)
        assert positions == sorted(positions)
        assert positions[0] > fake_runner.index_of("--import")

    def test_configure_runs_playbook_for_user(self, pipeline: ProvisioningPipeline, fake_runner):
        pipeline.install("dev", "alice")
        playbook = fake_runner.index_of("ansible-playbook playbooks/main.yml -v --extra-vars username=alice")
        assert playbook > fake_runner.index_of("chmod -R og-rwx /opt/ansible")
        assert fake_runner.index_of("--manage dev --set-default-user alice") > playbook
        assert fake_runner.index_of("--manage dev --set-sparse true") > playbook

    def test_sparse_disabled(self, make_pipeline, fake_runner):
        make_pipeline(sparse_storage=False).install("dev", "alice")
        assert fake_runner.index_of("--set-sparse") == -1

    def test_missing_digest_rejected_before_fetch(self, make_pipeline, image_requests):
        pipeline = make_pipeline(image_digest="")
        with pytest.raises(ValueError):
            pipeline.install("dev", "alice")
        assert image_requests == []

    def test_unsafe_user_rejected(self, pipeline: ProvisioningPipeline, fake_runner):
        with pytest.raises(ValueError):
            pipeline.install("dev", "alice; rm -rf /")
        assert fake_runner.calls == []


class TestInstallFailures:
    def test_integrity_failure_stops_before_instantiation(
        self, pipeline: ProvisioningPipeline, fake_runner, image_url: str
    ):
        outcome = pipeline.install(
            "dev", "alice", artifact=ArtifactRef(url=image_url, expected_digest="1" * 64)
        )
        assert outcome.state == EnvironmentState.FAILED
        assert outcome.failed_stage == EnvironmentState.ARTIFACT_VERIFYING
        assert "1" * 64 in outcome.message
        assert fake_runner.index_of("--import") == -1
        assert not pipeline.registry.exists("dev")

    def test_integrity_failure_keeps_existing_environment(
        self, pipeline: ProvisioningPipeline, fake_runner, image_url: str
    ):
        pipeline.install("dev", "alice")
        outcome = pipeline.install(
            "dev", "alice", artifact=ArtifactRef(url=image_url, expected_digest="1" * 64)
        )
        assert not outcome.ok
        assert pipeline.registry.require("dev").state == EnvironmentState.READY
        assert fake_runner.index_of("--unregister") == -1

    def test_import_failure(self, pipeline: ProvisioningPipeline, fake_runner):
        fake_runner.fail_on("--import", exit_code=2, stderr="invalid tar")
        outcome = pipeline.install("dev", "alice")
        assert outcome.failed_stage == EnvironmentState.INSTANTIATING
        assert outcome.exit_code == 2
        env = pipeline.registry.require("dev")
        assert env.state == EnvironmentState.FAILED
        assert env.failed_stage == EnvironmentState.INSTANTIATING
        assert fake_runner.index_of("apt-get") == -1

    def test_teardown_failure_aborts_replacement(self, pipeline: ProvisioningPipeline, fake_runner):
        pipeline.install("dev", "alice")
        fake_runner.fail_on("--unregister", exit_code=7)
        outcome = pipeline.install("dev", "alice")
        assert outcome.failed_stage == EnvironmentState.INSTANTIATING
        assert outcome.exit_code == 7
        assert sum("--import" in c for c in fake_runner.commands()) == 1

    def test_bootstrap_failure_skips_configuring(self, pipeline: ProvisioningPipeline, fake_runner):
        fake_runner.fail_on("apt-get -y install", exit_code=100)
        outcome = pipeline.install("dev", "alice")
        assert outcome.state == EnvironmentState.FAILED
        assert outcome.failed_stage == EnvironmentState.BOOTSTRAPPING
        assert outcome.exit_code == 100
        assert fake_runner.index_of("ansible-playbook") == -1
        assert pipeline.registry.require("dev").exit_code == 100
        with pytest.raises(StageFailure) as info:
            outcome.raise_for_failure()
        assert info.value.exit_code == 100

    def test_configure_failure(self, pipeline: ProvisioningPipeline, fake_runner):
        fake_runner.fail_on("ansible-playbook", exit_code=4)
        outcome = pipeline.install("dev", "alice")
        assert outcome.failed_stage == EnvironmentState.CONFIGURING
        assert fake_runner.index_of("--set-default-user") == -1

    def test_failed_run_is_terminal_in_ledger(self, pipeline: ProvisioningPipeline, fake_runner):
        fake_runner.fail_on("apt-get update", exit_code=1)
        outcome = pipeline.install("dev", "alice")
        transitions = _transitions(pipeline, outcome.run_id)
        assert transitions[-1] == "bootstrapping->failed"

    def test_instantiate_refuses_unverified_run(self, pipeline: ProvisioningPipeline, tmp_path: Path):
        run = _Run(
            "ef-test", "dev", "alice", EnvironmentState.INSTANTIATING,
            storage_path=tmp_path / "dev",
        )
        with pytest.raises(RuntimeError, match="unverified"):
            pipeline._instantiate(run)
        assert not pipeline.registry.exists("dev")


class TestUpdate:
    def test_update_unknown_name(self, pipeline: ProvisioningPipeline, fake_runner):
        with pytest.raises(NotFoundError):
            pipeline.update("ghost", "alice")
        assert not pipeline.registry.exists("ghost")
        assert fake_runner.calls == []

    def test_update_ready_environment(self, pipeline: ProvisioningPipeline, fake_runner, image_requests):
        pipeline.install("dev", "alice")
        imports_before = sum("--import" in c for c in fake_runner.commands())
        outcome = pipeline.update("dev", "bob")
        assert outcome.ok
        assert [r.stage_id for r in outcome.stage_results] == ["bootstrap", "configure"]
        assert sum("--import" in c for c in fake_runner.commands()) == imports_before
        assert len(image_requests) == 1
        assert pipeline.registry.require("dev").default_user == "bob"
        assert _transitions(pipeline, outcome.run_id)[0] == "ready->instantiated"

    def test_update_after_bootstrap_failure(self, pipeline: ProvisioningPipeline, fake_runner):
        fake_runner.fail_on("apt-get -y full-upgrade", exit_code=100)
        pipeline.install("dev", "alice")
        fake_runner.clear_failures()
        assert pipeline.update("dev", "alice").ok

    def test_update_after_instantiation_failure_refused(self, pipeline: ProvisioningPipeline, fake_runner):
        fake_runner.fail_on("--import", exit_code=1)
        pipeline.install("dev", "alice")
        with pytest.raises(NotReadyForUpdateError):
            pipeline.update("dev", "alice")


class TestCancel:
    def test_cancel_before_first_stage(self, pipeline: ProvisioningPipeline, image_requests):
        pipeline.cancel()
        outcome = pipeline.install("dev", "alice")
        assert outcome.failed_stage == EnvironmentState.ARTIFACT_VERIFYING
        assert outcome.message == "cancelled"
        assert image_requests == []

    def test_cancel_checked_at_stage_boundary(self, pipeline: ProvisioningPipeline, fake_runner):
        original = pipeline._handlers["instantiate"]

        def instantiate_then_cancel(run):
            result = original(run)
            pipeline.cancel()
            return result

        pipeline._handlers["instantiate"] = instantiate_then_cancel
        outcome = pipeline.install("dev", "alice")
        assert outcome.failed_stage == EnvironmentState.BOOTSTRAPPING
        assert fake_runner.index_of("apt-get") == -1
        env = pipeline.registry.require("dev")
        assert env.state == EnvironmentState.FAILED
        assert env.accepts_update

    def test_cancel_applies_to_one_run_only(self, pipeline: ProvisioningPipeline):
        pipeline.cancel()
        assert pipeline.install("dev", "alice").message == "cancelled"
        assert not pipeline.cancelled

        outcome = pipeline.install("web", "alice")
        assert outcome.ok
        assert pipeline.registry.require("web").state == EnvironmentState.READY

    def test_update_after_cancelled_install_of_other_name(
        self, pipeline: ProvisioningPipeline
    ):
        assert pipeline.install("dev", "alice").ok
        pipeline.cancel()
        assert not pipeline.install("web", "alice").ok
        assert pipeline.update("dev", "alice").state == EnvironmentState.READY


class TestBackendListing:
    def test_first_install_on_clean_host(self, pipeline: ProvisioningPipeline, fake_runner):
        fake_runner.fail_on(
            "--list",
            exit_code=4294967295,
            stdout="Windows Subsystem for Linux has no installed distributions.\r\n",
        )
        outcome = pipeline.install("dev", "alice")
        assert outcome.ok
        assert fake_runner.index_of("--unregister") == -1

    def test_listing_failure_reports_exit_code(self, pipeline: ProvisioningPipeline, fake_runner):
        fake_runner.fail_on("--list", exit_code=5, stderr="service unavailable")
        outcome = pipeline.install("dev", "alice")
        assert outcome.state == EnvironmentState.FAILED
        assert outcome.failed_stage == EnvironmentState.INSTANTIATING
        assert outcome.exit_code == 5
        assert "Cannot launch" not in outcome.message
        assert fake_runner.index_of("--import") == -1


class TestValidateNames:
    @pytest.mark.parametrize("name", ["dev", "Ubuntu-24.04", "a_b"])
    def test_valid_environment_names(self, name: str):
        validate_names(name, "alice")

    @pytest.mark.parametrize("name", ["", "-dev", "dev env", "dev;x"])
    def test_invalid_environment_names(self, name: str):
        with pytest.raises(ValueError):
            validate_names(name, "alice")

    @pytest.mark.parametrize("user", ["Alice", "root user", "$(id)", ""])
    def test_invalid_user_names(self, user: str):
        with pytest.raises(ValueError):
            validate_names("dev", user)
