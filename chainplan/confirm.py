import typing

import click

from chainplan.constants import ZERO_ADDRESS
from chainplan.models import Step


def _continue() -> None:
    """Asks the user to continue."""
    click.confirm("Continue?", default=False, abort=True)


def _confirm_zero_address(locations: typing.List[str]) -> None:
    click.secho("Zero Address detected for deployment parameters:", fg="yellow")
    for location in locations:
        click.echo(f"\t{location}")
    click.confirm("Continue?", default=False, abort=True)


def zero_address_parameters(
    steps: typing.Iterable[Step], constants: typing.Optional[typing.Dict[str, typing.Any]] = None
) -> typing.List[str]:
    """Parameters and constants set to the zero address, e.g. 'step.constructor._owner'."""
    found = list()

    def visit(value: typing.Any, location: str) -> None:
        if isinstance(value, dict):
            for key, item in value.items():
                visit(item, f"{location}.{key}")
        elif isinstance(value, list):
            for index, item in enumerate(value):
                visit(item, f"{location}[{index}]")
        elif isinstance(value, str) and value.lower() == ZERO_ADDRESS:
            found.append(location)

    for name, value in (constants or dict()).items():
        visit(value, f"constants.{name}")
    for step in steps:
        visit(step.params, step.id)
    return found


def confirm_run(
    chain_id: int,
    signer: str,
    pending: typing.List[Step],
    constants: typing.Optional[typing.Dict[str, typing.Any]] = None,
) -> None:
    """Shows what is about to be sent and asks the user to confirm."""
    click.echo(f"Chain ID: {chain_id}")
    click.echo(f"Account: {signer}")
    if not pending:
        click.echo("(i) Nothing to do; every step is already recorded.")
        return

    click.echo(f"\n{len(pending)} step(s) to execute:")
    for step in pending:
        target = f" -> {step.produces}" if step.produces else ""
        click.echo(f"\t{step.id} ({step.kind.value}){target}")
    _continue()

    zero_addresses = zero_address_parameters(pending, constants)
    if zero_addresses:
        _confirm_zero_address(zero_addresses)
