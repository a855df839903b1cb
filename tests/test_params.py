import asyncio

import pytest
from eth_utils import keccak, to_hex

from chainplan.constants import ZERO_ADDRESS
from chainplan.errors import ArtifactNotFound, InvalidPlanError, PermanentExecutionError
from chainplan.models import Artifact, ArtifactKind, StepResult, StepStatus
from chainplan.params import (
    ArtifactReference,
    Constant,
    Resolver,
    VariableContext,
    collect_references,
    process_raw_value,
)
from tests.conftest import CHAIN_ID, DEPLOYER, FEE_RECEIVER, WETH

VAULT = "0x000000000000000000000000000000000000bEEF"
VAULT_IMPLEMENTATION = "0x0000000000000000000000000000000000001111"


def record(ledger, name, address, kind=ArtifactKind.CONTRACT, implementation=None):
    artifact = Artifact(
        name=name,
        chain_id=CHAIN_ID,
        address=address,
        kind=kind,
        produced_by=f"deploy-{name}",
        created_at=1700000000,
        contract=name,
        implementation=implementation,
    )
    ledger.record_result(
        CHAIN_ID,
        StepResult(
            chain_id=CHAIN_ID,
            step_id=f"deploy-{name}",
            attempt=1,
            status=StepStatus.SUCCESS,
            artifact=artifact,
        ),
    )


def resolve(resolver, value, contract=None, constants=None):
    return asyncio.run(resolver.resolve(value, contract_name=contract, constants=constants))


def test_literals_pass_through(ledger):
    resolver = Resolver(CHAIN_ID, ledger)
    assert resolve(resolver, 42) == 42
    assert resolve(resolver, "plain") == "plain"
    assert resolve(resolver, [1, {"a": "b"}]) == [1, {"a": "b"}]


def test_deployer_and_constants(ledger, executor):
    resolver = Resolver(CHAIN_ID, ledger, executor=executor)
    constants = {"FEE_RECEIVER": FEE_RECEIVER, "max_apy": 500}
    value = {"owner": "$deployer", "fees": ["$FEE_RECEIVER", "$max_apy"]}
    assert resolve(resolver, value, constants=constants) == {
        "owner": DEPLOYER,
        "fees": [FEE_RECEIVER, 500],
    }


def test_artifact_references_come_from_the_ledger(ledger):
    record(ledger, "Vault", VAULT, kind=ArtifactKind.PROXY, implementation=VAULT_IMPLEMENTATION)
    resolver = Resolver(CHAIN_ID, ledger)
    assert resolve(resolver, "$Vault") == VAULT
    assert resolve(resolver, "$Vault.implementation") == VAULT_IMPLEMENTATION


def test_implementation_of_a_plain_contract_is_rejected(ledger):
    record(ledger, "Token", VAULT)
    resolver = Resolver(CHAIN_ID, ledger)
    with pytest.raises(PermanentExecutionError):
        resolve(resolver, "$Token.implementation")


def test_upper_case_external_artifact_is_not_a_constant(ledger):
    resolver = Resolver(CHAIN_ID, ledger, external={"WETH": WETH})
    assert resolve(resolver, "$WETH") == WETH


def test_ledger_wins_over_external_placeholder(ledger):
    record(ledger, "Vault", VAULT)
    resolver = Resolver(CHAIN_ID, ledger, external={"Vault": None})
    assert resolve(resolver, "$Vault") == VAULT


def test_missing_artifact_at_run_time(ledger):
    resolver = Resolver(CHAIN_ID, ledger, external={"Vault": None})
    with pytest.raises(ArtifactNotFound):
        resolve(resolver, "$Vault")


def test_eager_resolution_uses_the_zero_address(ledger):
    resolver = Resolver(CHAIN_ID, ledger, external={"Vault": None}, eager=True)
    assert resolve(resolver, ["$Vault", "$deployer"]) == [ZERO_ADDRESS, ZERO_ADDRESS]


def test_encode_uses_the_executor(ledger, executor):
    resolver = Resolver(CHAIN_ID, ledger, executor=executor)
    encoded = resolve(resolver, "$encode:initialize,$deployer", contract="Vault")
    expected = keccak(text="initialize(1)")[:4] + bytes(32)
    assert encoded == to_hex(expected)
    assert ("encode", "initialize") in executor.calls


def test_encode_requires_a_contract():
    context = VariableContext(artifact_names=set())
    with pytest.raises(InvalidPlanError):
        process_raw_value("$encode:initialize", context)


def test_unknown_references_are_plan_errors():
    context = VariableContext(artifact_names={"Vault"}, constants={"MAX": 1})
    with pytest.raises(InvalidPlanError, match="Artifact 'Nope' not found"):
        process_raw_value("$Nope", context)
    with pytest.raises(InvalidPlanError, match="Constant 'MISSING'"):
        process_raw_value("$MISSING", context)
    with pytest.raises(InvalidPlanError, match="attribute"):
        process_raw_value("$Vault.owner", context)


def test_processed_values_and_references():
    context = VariableContext(
        artifact_names={"Vault", "Token"}, contract_name="Vault", constants={"MAX": 1}
    )
    processed = process_raw_value(
        {"a": ["$Vault", "$MAX"], "b": "$encode:setToken,$Token.implementation"}, context
    )
    assert isinstance(processed["a"][0], ArtifactReference)
    assert isinstance(processed["a"][1], Constant)
    assert collect_references(processed) == {"Vault", "Token"}


def test_planned_artifacts_resolve_in_dry_runs(ledger):
    resolver = Resolver(CHAIN_ID, ledger, eager=True, planned={"Vault"})
    assert resolve(resolver, {"vault": "$Vault"}) == {"vault": ZERO_ADDRESS}
