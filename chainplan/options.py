from pathlib import Path

import click

from chainplan.types import MinInt, PositiveFloat

chain_option = click.option(
    "--chain",
    "-c",
    "chain_id",
    help="Chain ID the plan runs against",
    type=MinInt(1),
    required=True,
)

plan_option = click.option(
    "--plan",
    "-p",
    "plan_filepath",
    help="Filepath of the deployment plan (YAML)",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)

ledger_dir_option = click.option(
    "--ledger-dir",
    help="Directory holding the per-chain run ledgers",
    type=click.Path(file_okay=False, path_type=Path),
    required=False,
)

json_option = click.option(
    "--json",
    "as_json",
    help="Print machine-readable JSON on stdout",
    is_flag=True,
)

max_attempts_option = click.option(
    "--max-attempts",
    help="Attempts per step before a transient failure becomes permanent",
    type=MinInt(1),
    required=False,
)

concurrency_option = click.option(
    "--concurrency",
    help="Maximum number of steps in flight",
    type=MinInt(1),
    required=False,
)

confirmations_option = click.option(
    "--confirmations",
    help="Block confirmations to wait for before a step succeeds",
    type=MinInt(1),
    required=False,
)

step_timeout_option = click.option(
    "--step-timeout",
    help="Wall-clock timeout of a single step attempt, in seconds",
    type=PositiveFloat(),
    required=False,
)

force_option = click.option(
    "--force",
    "force",
    help="Re-execute a step that already succeeded (not allowed for deployments)",
    multiple=True,
)
