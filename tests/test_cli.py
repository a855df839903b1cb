import json

import pytest
import yaml
from click.testing import CliRunner

from chainplan.cli import cli
from chainplan.constants import LEDGER_DIR_ENVVAR, ZERO_ADDRESS
from chainplan.errors import PermanentExecutionError
from chainplan.ledger import RunLedger
from tests.conftest import CHAIN_ID, FakeExecutor, FakeVerifier, SleepRecorder

STEPS = [
    {
        "id": "deploy-token",
        "kind": "deploy",
        "contract": "TokenA",
        "constructor": {"_owner": "$deployer"},
    },
    {"id": "set-fee", "kind": "call", "target": "$TokenA", "function": "setFee", "args": [25]},
]


@pytest.fixture()
def write_plan(tmp_path):
    def write(steps=None, **sections):
        config = {"deployment": {"name": "cli", "chain_id": CHAIN_ID}, "steps": steps or STEPS}
        config.update(sections)
        filepath = tmp_path / "plan.yml"
        filepath.write_text(yaml.safe_dump(config))
        return filepath

    return write


@pytest.fixture()
def ledger_dir(tmp_path):
    return tmp_path / "ledger"


@pytest.fixture()
def fake_chain():
    return {"executor": FakeExecutor(), "verifier": FakeVerifier(), "sleep": SleepRecorder()}


@pytest.fixture()
def invoke(ledger_dir, fake_chain):
    runner = CliRunner()

    def invoke(*args):
        return runner.invoke(cli, [*args, "--ledger-dir", str(ledger_dir)], obj=fake_chain)

    return invoke


def run_args(plan, *extra):
    return ["run", "--chain", str(CHAIN_ID), "--plan", str(plan), "--yes", *extra]


def test_run(invoke, write_plan, ledger_dir, fake_chain):
    result = invoke(*run_args(write_plan(), "--json"))
    assert result.exit_code == 0, result.output

    summary = json.loads(result.stdout)
    assert summary["complete"] is True
    assert summary["counts"]["success"] == 2
    assert [step["status"] for step in summary["steps"]] == ["success", "success"]

    token = RunLedger(ledger_dir).lookup_artifact(CHAIN_ID, "TokenA")
    assert token.address == fake_chain["executor"].deployed("TokenA")[0]


def test_rerun_requires_resume(invoke, write_plan, fake_chain):
    plan = write_plan()
    assert invoke(*run_args(plan)).exit_code == 0
    calls = len(fake_chain["executor"].calls)

    result = invoke(*run_args(plan))
    assert result.exit_code == 2
    assert "--resume" in result.output

    result = invoke(*run_args(plan, "--resume", "--json"))
    assert result.exit_code == 0
    assert json.loads(result.stdout)["counts"]["cached"] == 2
    assert len(fake_chain["executor"].calls) == calls


def test_failed_run_exits_with_one(invoke, write_plan, fake_chain):
    fake_chain["executor"].failures["TokenA"].append(PermanentExecutionError("execution reverted"))
    result = invoke(*run_args(write_plan(), "--json"))
    assert result.exit_code == 1

    steps = {step["step_id"]: step for step in json.loads(result.stdout)["steps"]}
    assert steps["deploy-token"]["status"] == "failed"
    assert steps["set-fee"]["status"] == "not_run"


def test_cycle_is_a_plan_error(invoke, write_plan, fake_chain):
    steps = STEPS + [
        {"id": "a", "kind": "call", "target": "$TokenA", "function": "f", "depends_on": ["b"]},
        {"id": "b", "kind": "call", "target": "$TokenA", "function": "g", "depends_on": ["a"]},
    ]
    result = invoke(*run_args(write_plan(steps)))
    assert result.exit_code == 2
    assert "cycle" in result.output
    assert fake_chain["executor"].calls == []


def test_chain_mismatch_is_a_plan_error(invoke, write_plan):
    result = invoke("run", "--chain", "1", "--plan", str(write_plan()), "--yes")
    assert result.exit_code == 2
    assert "does not match" in result.output


def test_invalid_limit_is_a_usage_error(invoke, write_plan):
    result = invoke(*run_args(write_plan(), "--max-attempts", "0"))
    assert result.exit_code == 2


def test_dry_run(invoke, write_plan, ledger_dir, fake_chain):
    result = invoke(*run_args(write_plan(), "--dry-run", "--json"))
    assert result.exit_code == 0, result.output

    data = json.loads(result.stdout)
    assert data["cached"] == []
    [[deploy], [set_fee]] = data["batches"]
    assert deploy["id"] == "deploy-token"
    assert deploy["params"]["constructor"] == {"_owner": ZERO_ADDRESS}
    assert set_fee["depends_on"] == ["deploy-token"]
    assert set_fee["params"]["target"] == ZERO_ADDRESS

    assert fake_chain["executor"].calls == []
    assert not RunLedger(ledger_dir).exists(CHAIN_ID)


def test_confirmation_can_abort(ledger_dir, write_plan, fake_chain):
    args = ["run", "--chain", str(CHAIN_ID), "--plan", str(write_plan())]
    args += ["--ledger-dir", str(ledger_dir)]
    result = CliRunner().invoke(cli, args, obj=fake_chain, input="n\n")
    assert result.exit_code == 1
    assert "2 step(s) to execute" in result.output
    assert fake_chain["executor"].calls == []

    result = CliRunner().invoke(cli, args, obj=fake_chain, input="y\n")
    assert result.exit_code == 0


def test_status(invoke, write_plan):
    plan = write_plan()
    invoke(*run_args(plan))

    result = invoke("status", "--chain", str(CHAIN_ID), "--json")
    assert result.exit_code == 0
    rows = json.loads(result.stdout)["steps"]
    assert [(row["step_id"], row["status"]) for row in rows] == [
        ("deploy-token", "success"),
        ("set-fee", "success"),
    ]
    assert rows[0]["artifact"] == "TokenA"

    result = invoke("status", "--chain", "1")
    assert result.exit_code == 0
    assert "Nothing recorded" in result.output


def test_status_with_plan_lists_pending_steps(invoke, write_plan):
    result = invoke("status", "--chain", str(CHAIN_ID), "--plan", str(write_plan()), "--json")
    assert result.exit_code == 0
    rows = json.loads(result.stdout)["steps"]
    assert [row["status"] for row in rows] == ["pending", "pending"]


def test_export_registry(invoke, write_plan, tmp_path, fake_chain):
    output = tmp_path / "registry.json"
    result = invoke("export-registry", "--chain", str(CHAIN_ID), "--output", str(output))
    assert result.exit_code == 1

    invoke(*run_args(write_plan()))
    result = invoke("export-registry", "--chain", str(CHAIN_ID), "--output", str(output))
    assert result.exit_code == 0

    registry = json.loads(output.read_text())
    token = registry[str(CHAIN_ID)]["TokenA"]
    assert token["address"] == fake_chain["executor"].deployed("TokenA")[0]
    assert token["step_id"] == "deploy-token"


def test_run_writes_the_plan_registry(invoke, write_plan, tmp_path):
    artifacts = {"dir": str(tmp_path / "artifacts"), "filename": "local.json"}
    result = invoke(*run_args(write_plan(artifacts=artifacts)))
    assert result.exit_code == 0

    registry = json.loads((tmp_path / "artifacts" / "local.json").read_text())
    assert list(registry[str(CHAIN_ID)]) == ["TokenA"]


def test_ledger_directory_from_environment(tmp_path, write_plan, fake_chain, monkeypatch):
    monkeypatch.setenv(LEDGER_DIR_ENVVAR, str(tmp_path / "from-env"))
    args = ["run", "--chain", str(CHAIN_ID), "--plan", str(write_plan()), "--yes"]
    result = CliRunner().invoke(cli, args, obj=fake_chain)
    assert result.exit_code == 0
    assert RunLedger(tmp_path / "from-env").exists(CHAIN_ID)
