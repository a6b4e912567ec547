"""Adversarial tests — cache corruption, ledger tampering, state machine bypass."""

from __future__ import annotations

import sqlite3

import pytest

from envforge.core.ledger import LedgerIntegrityError
from envforge.core.pipeline import ProvisioningPipeline
from envforge.core.registry import InvalidTransitionError
from envforge.models.environments import EnvironmentState


class TestCacheTampering:
    def test_swapped_cached_image_is_rejected(self, pipeline: ProvisioningPipeline, fake_runner):
        assert pipeline.install("dev", "alice").ok
        cached = pipeline.default_artifact().local_path(pipeline.config.cache_dir)
        cached.write_bytes(b"malicious root filesystem")

        outcome = pipeline.install("dev", "alice")
        assert outcome.failed_stage == EnvironmentState.ARTIFACT_VERIFYING
        assert cached.read_bytes() == b"malicious root filesystem"
        assert sum("--import" in c for c in fake_runner.commands()) == 1


class TestLedgerTampering:
    def test_rewritten_detail_detected(self, pipeline: ProvisioningPipeline):
        outcome = pipeline.install("dev", "alice")
        conn = sqlite3.connect(str(pipeline.config.registry_path))
        with conn:
            conn.execute(
                "UPDATE transition_ledger SET detail = 'forged' WHERE run_id = ? "
                "AND state_transition = 'configuring->ready'",
                (outcome.run_id,),
            )
        conn.close()
        with pytest.raises(LedgerIntegrityError):
            pipeline.ledger.verify_chain(outcome.run_id)

    def test_deleted_entry_detected(self, pipeline: ProvisioningPipeline):
        outcome = pipeline.install("dev", "alice")
        conn = sqlite3.connect(str(pipeline.config.registry_path))
        with conn:
            conn.execute(
                "DELETE FROM transition_ledger WHERE run_id = ? "
                "AND state_transition = 'instantiated->bootstrapping'",
                (outcome.run_id,),
            )
        conn.close()
        with pytest.raises(LedgerIntegrityError):
            pipeline.ledger.verify_chain(outcome.run_id)


class TestStateMachineBypass:
    def test_ready_cannot_be_forced_back(self, pipeline: ProvisioningPipeline):
        pipeline.install("dev", "alice")
        with pytest.raises(InvalidTransitionError):
            pipeline.registry.set_state("dev", EnvironmentState.BOOTSTRAPPING)

    def test_failed_cannot_be_marked_ready(self, pipeline: ProvisioningPipeline, fake_runner):
        fake_runner.fail_on("ansible-playbook", exit_code=1)
        pipeline.install("dev", "alice")
        with pytest.raises(InvalidTransitionError):
            pipeline.registry.set_state("dev", EnvironmentState.READY)
