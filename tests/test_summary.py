from chainplan.models import Artifact, ArtifactKind, Step, StepKind, StepResult, StepStatus
from chainplan.summary import ReportStatus, RunSummary
from tests.conftest import CHAIN_ID

VAULT = "0x4200000000000000000000000000000000000006"


def steps():
    return [
        Step.create("deploy-vault", StepKind.DEPLOY_PROXY, produces="Vault"),
        Step.create("upgrade-vault", StepKind.UPGRADE_PROXY, produces="Vault"),
        Step.create("deploy-vault.verify", StepKind.VERIFY),
        Step.create("configure", StepKind.CALL),
    ]


def result(step_id, status=StepStatus.SUCCESS, **kwargs):
    return StepResult(chain_id=CHAIN_ID, step_id=step_id, attempt=1, status=status, **kwargs)


def test_everything_starts_as_not_run():
    summary = RunSummary(CHAIN_ID, steps())
    assert not summary.complete
    assert summary.exit_code == 1
    assert summary.counts["not_run"] == 4


def test_complete_run_with_a_warning(capsys):
    vault = Artifact(
        name="Vault",
        chain_id=CHAIN_ID,
        address=VAULT,
        kind=ArtifactKind.PROXY,
        produced_by="upgrade-vault",
        created_at=0,
        contract="Vault",
        generation=2,
    )
    summary = RunSummary(CHAIN_ID, steps())
    summary.cached(result("deploy-vault"))
    summary.succeeded(result("upgrade-vault", artifact=vault, tx_hash="0x01"), attempts=3)
    summary.warning(
        result("deploy-vault.verify", StepStatus.PERMANENT_FAILURE, error="Unable to verify"), 1
    )
    summary.succeeded(result("configure"), attempts=1)

    assert summary.complete
    assert summary.exit_code == 0
    assert summary["upgrade-vault"].generation == 2
    assert summary["upgrade-vault"].address == VAULT
    assert summary.with_status(ReportStatus.WARNING)[0].step_id == "deploy-vault.verify"

    summary.render()
    output = capsys.readouterr().out
    assert "(generation 2)" in output
    assert "[3 attempts]" in output
    assert "Unable to verify" in output


def test_failed_and_skipped_steps():
    summary = RunSummary(CHAIN_ID, steps())
    summary.failed(result("deploy-vault", StepStatus.PERMANENT_FAILURE, error="reverted"), 1)
    summary.skipped("upgrade-vault", cause="deploy-vault")

    data = summary.to_dict()
    assert data["complete"] is False
    assert data["counts"]["failed"] == 1
    assert data["counts"]["skipped"] == 1
    assert data["steps"][1] == {
        "step_id": "upgrade-vault",
        "kind": "upgrade_proxy",
        "status": "skipped",
        "attempts": 0,
        "address": None,
        "generation": None,
        "tx_hash": None,
        "error": "dependency 'deploy-vault' failed",
    }


def test_cancelled_run_is_not_a_success():
    summary = RunSummary(CHAIN_ID, steps()[:1])
    summary.cached(result("deploy-vault"))
    summary.cancelled = True
    assert summary.complete
    assert summary.exit_code == 1
