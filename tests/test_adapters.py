import asyncio

import pytest
from ethpm_types.abi import ABIType, MethodABI

from chainplan.adapters import (
    ExplorerVerifier,
    _validate_constructor_abi_inputs,
    _validate_method_args,
)
from chainplan.errors import PermanentExecutionError, TransientExecutionError
from chainplan.executor import VerificationStatus
from tests.conftest import WETH as ACCOUNT

SET_FEE = MethodABI(
    name="setFee",
    inputs=[ABIType(name="fee", type="uint256")],
    stateMutability="nonpayable",
)
SET_FEE_FOR = MethodABI(
    name="setFee",
    inputs=[ABIType(name="account", type="address"), ABIType(name="fee", type="uint256")],
    stateMutability="nonpayable",
)


def test_method_args_pick_the_matching_overload():
    assert _validate_method_args([SET_FEE, SET_FEE_FOR], [25]) == {"fee": 25}
    assert _validate_method_args([SET_FEE, SET_FEE_FOR], [ACCOUNT, 25]) == {
        "account": ACCOUNT,
        "fee": 25,
    }


@pytest.mark.parametrize("args", [[], ["not a number"], [ACCOUNT, 25, 1]])
def test_invalid_method_args(args):
    with pytest.raises(PermanentExecutionError, match="Invalid argument"):
        _validate_method_args([SET_FEE, SET_FEE_FOR], args)


def test_constructor_parameters_are_checked_by_name_and_type():
    inputs = [ABIType(name="_owner", type="address"), ABIType(name="_supply", type="uint256")]
    _validate_constructor_abi_inputs("Token", inputs, {"_owner": ACCOUNT, "_supply": 10})

    with pytest.raises(PermanentExecutionError, match="does not match the expected ABI name"):
        _validate_constructor_abi_inputs("Token", inputs, {"_supply": 10, "_owner": ACCOUNT})
    with pytest.raises(PermanentExecutionError, match="length mismatch"):
        _validate_constructor_abi_inputs("Token", inputs, {"_owner": ACCOUNT})
    with pytest.raises(PermanentExecutionError, match="does not match expected ABI type"):
        _validate_constructor_abi_inputs("Token", inputs, {"_owner": 5, "_supply": 10})


def verify_with(error):
    verifier = ExplorerVerifier()

    def publish(address):
        if error:
            raise error

    verifier._publish = publish
    return asyncio.run(verifier.verify_source(ACCOUNT, "Token"))


def test_explorer_verification_outcomes():
    assert verify_with(None).status is VerificationStatus.VERIFIED
    already = verify_with(Exception("Contract source code already verified"))
    assert already.status is VerificationStatus.ALREADY_VERIFIED
    assert already.ok

    failed = verify_with(Exception("Fail - Unable to verify"))
    assert failed.status is VerificationStatus.FAILED
    assert failed.reason == "Fail - Unable to verify"
    assert not failed.ok


def test_explorer_rate_limits_are_retried():
    with pytest.raises(TransientExecutionError):
        verify_with(Exception("Max rate limit reached"))
