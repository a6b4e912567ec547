"""End-to-end provisioning scenarios.

These exercise the ProvisioningPipeline, IntegrityVerifier, EnvironmentRegistry,
TransitionLedger and CommandBridge together against a scripted backend and a
mock image server.
"""

from __future__ import annotations

import hashlib

import pytest

from envforge.core.pipeline import ProvisioningPipeline
from envforge.core.registry import NotFoundError
from envforge.models.artifacts import ArtifactRef
from envforge.models.environments import EnvironmentState


class TestScenarios:
    def test_digest_mismatch_fails_at_artifact_verifying(
        self, pipeline: ProvisioningPipeline, image_url: str, image_digest: str
    ):
        d1 = hashlib.sha256(b"some other image").hexdigest()
        outcome = pipeline.install(
            "dev", "alice", artifact=ArtifactRef(url=image_url, expected_digest=d1)
        )
        assert outcome.state == EnvironmentState.FAILED
        assert outcome.failed_stage == EnvironmentState.ARTIFACT_VERIFYING
        assert d1 in outcome.message and image_digest in outcome.message
        assert not outcome.ok

    def test_reinstall_existing_environment(
        self, pipeline: ProvisioningPipeline, fake_runner
    ):
        first = pipeline.install("dev", "alice")
        assert first.ok

        second = pipeline.install("dev", "alice")
        assert second.ok
        unregister = fake_runner.index_of("--unregister dev")
        imports = [i for i, c in enumerate(fake_runner.commands()) if "--import dev" in c]
        assert len(imports) == 2
        assert imports[0] < unregister < imports[1]
        env = pipeline.registry.require("dev")
        assert env.state == EnvironmentState.READY
        assert env.run_id == second.run_id

    def test_bootstrap_exit_100(self, pipeline: ProvisioningPipeline, fake_runner):
        fake_runner.fail_on("apt-get -y install", exit_code=100)
        outcome = pipeline.install("dev", "alice")
        assert outcome.failed_stage == EnvironmentState.BOOTSTRAPPING
        assert outcome.exit_code == 100
        assert fake_runner.index_of("ansible-playbook") == -1

    def test_update_never_creates(self, pipeline: ProvisioningPipeline, fake_runner):
        with pytest.raises(NotFoundError):
            pipeline.update("dev", "alice")
        assert pipeline.registry.list_environments() == []
        assert fake_runner.instances == []


class TestRecovery:
    def test_state_survives_new_pipeline(self, make_pipeline, fake_runner):
        fake_runner.fail_on("ansible-playbook", exit_code=2)
        make_pipeline().install("dev", "alice")

        fake_runner.clear_failures()
        fresh = make_pipeline()
        env = fresh.registry.require("dev")
        assert env.state == EnvironmentState.FAILED
        assert env.failed_stage == EnvironmentState.CONFIGURING
        assert fresh.update("dev", "alice").ok

    def test_history_spans_runs(self, pipeline: ProvisioningPipeline):
        first = pipeline.install("dev", "alice")
        second = pipeline.update("dev", "alice")
        assert pipeline.ledger.get_run_ids("dev") == [second.run_id, first.run_id]
        for run_id in (first.run_id, second.run_id):
            assert pipeline.ledger.verify_chain(run_id)

    def test_distinct_names_are_independent(self, pipeline: ProvisioningPipeline, fake_runner):
        fake_runner.fail_on("--import web", exit_code=1)
        assert not pipeline.install("web", "alice").ok
        assert pipeline.install("dev", "alice").ok
        assert pipeline.registry.require("web").state == EnvironmentState.FAILED
        assert pipeline.registry.require("dev").state == EnvironmentState.READY
