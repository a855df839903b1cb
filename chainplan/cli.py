import asyncio
import json
import logging
import signal
import typing
from contextlib import ExitStack, contextmanager
from pathlib import Path

import click
from ape import accounts, networks
from ape.cli.choices import select_account

from chainplan.adapters import ApeChainExecutor, ExplorerVerifier
from chainplan.config import ledger_directory, load_run_options
from chainplan.confirm import confirm_run
from chainplan.errors import InvalidPlanError, LedgerConsistencyError, PlanError
from chainplan.graph import StepGraph
from chainplan.ledger import RunLedger
from chainplan.logging_utils import configure_logging
from chainplan.models import StepKind
from chainplan.networks import is_local_network, network_choice_for_chain
from chainplan.options import (
    chain_option,
    concurrency_option,
    confirmations_option,
    force_option,
    json_option,
    ledger_dir_option,
    max_attempts_option,
    plan_option,
    step_timeout_option,
)
from chainplan.orchestrator import CancelToken, Orchestrator
from chainplan.params import Resolver
from chainplan.plan import DeploymentPlan
from chainplan.registry import registry_from_artifacts
from chainplan.summary import RunSummary
from chainplan.utils import check_plugins

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_PLAN_ERROR = 2


def _fail(ctx: click.Context, error: Exception, code: int = EXIT_PLAN_ERROR) -> None:
    click.secho(f"Error: {error}", fg="red", err=True)
    ctx.exit(code)


def _load_plan(chain_id: int, plan_filepath: Path) -> typing.Tuple[DeploymentPlan, StepGraph]:
    plan = DeploymentPlan.from_yaml(plan_filepath)
    if plan.chain_id != chain_id:
        raise InvalidPlanError(
            f"chain_id in plan file ({plan.chain_id}) does not match --chain ({chain_id})."
        )
    return plan, plan.graph()


def _refuse_published(ledger: RunLedger, chain_id: int, graph: StepGraph) -> None:
    """A plan that already ran on this chain continues only with --resume."""
    recorded = {result.step_id for result in ledger.results(chain_id)}
    overlap = [step.id for step in graph if step.id in recorded]
    if overlap:
        raise InvalidPlanError(
            f"Deployment is already recorded for chain_id {chain_id} "
            f"({len(overlap)} step(s) in {ledger.filepath(chain_id)}); use --resume to continue."
        )


@contextmanager
def _ape_session(
    chain_id: int,
    network: typing.Optional[str],
    account_alias: typing.Optional[str],
    autosign: bool,
    verify: bool,
):
    """Connects to the chain with ape and yields an executor and a verifier."""
    choice = network or network_choice_for_chain(chain_id)
    with networks.parse_network_choice(choice) as provider:
        live_deployment = not is_local_network()
        if provider.chain_id != chain_id and live_deployment:
            raise InvalidPlanError(
                f"chain_id {chain_id} does not match chain_id of network {choice} "
                f"({provider.chain_id})."
            )
        check_plugins(verify=verify)
        account = accounts.load(account_alias) if account_alias else select_account()
        executor = ApeChainExecutor(account=account, autosign=autosign)
        verifier = ExplorerVerifier() if live_deployment else None
        yield executor, verifier


async def _run_until_done(
    orchestrator: Orchestrator, plan: DeploymentPlan, graph: StepGraph, token: CancelToken
) -> RunSummary:
    loop = asyncio.get_running_loop()
    installed = True
    try:
        # Ctrl+C stops scheduling; running steps finish and are recorded
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError):
        installed = False
        logger.debug("SIGINT handler not available; Ctrl+C interrupts immediately.")
    try:
        return await orchestrator.run(
            graph, plan.chain_id, external=plan.external, constants=plan.constants
        )
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _describe(
    plan: DeploymentPlan, graph: StepGraph, ledger: RunLedger, satisfied: typing.Set[str]
) -> typing.List[typing.List[typing.Dict[str, typing.Any]]]:
    """Ready batches with parameters resolved eagerly: unrecorded artifacts read as zero."""
    planned = {step.produces for step in graph if step.produces}
    resolver = Resolver(
        plan.chain_id, ledger, external=plan.external, eager=True, planned=planned
    )
    batches = list()
    for batch in graph.topological_order(satisfied=satisfied):
        described = list()
        for step in batch:
            params = await resolver.resolve(
                step.params, contract_name=step.params.get("contract"), constants=plan.constants
            )
            described.append(
                {
                    "id": step.id,
                    "kind": step.kind.value,
                    "produces": step.produces,
                    "depends_on": sorted(graph.dependencies_of(step.id)),
                    "params": params,
                }
            )
        batches.append(described)
    return batches


def _dry_run(
    plan: DeploymentPlan, graph: StepGraph, ledger: RunLedger, as_json: bool
) -> None:
    satisfied = ledger.seed(plan.chain_id).satisfied & {step.id for step in graph}
    batches = asyncio.run(_describe(plan, graph, ledger, satisfied))
    if as_json:
        data = {"chain_id": plan.chain_id, "cached": sorted(satisfied), "batches": batches}
        click.echo(json.dumps(data, indent=2, default=str))
        return

    click.secho(f"Dry run of '{plan.name}' on chain {plan.chain_id}", bold=True)
    if satisfied:
        click.echo(f"(i) {len(satisfied)} step(s) already recorded: {', '.join(sorted(satisfied))}")
    for index, batch in enumerate(batches, start=1):
        click.secho(f"\nBatch {index}", fg="cyan")
        for step in batch:
            target = f" -> {step['produces']}" if step["produces"] else ""
            click.echo(f"  {step['id']} ({step['kind']}){target}")
            for name, value in step["params"].items():
                click.echo(f"\t{name}={value}")


@click.group()
@click.option("--verbose", "-v", help="Show debug logs", is_flag=True)
@click.pass_context
def cli(ctx, verbose):
    """Deploy, upgrade and wire contracts from declarative plans."""
    ctx.ensure_object(dict)
    configure_logging(logging.DEBUG if verbose else logging.INFO)


@cli.command()
@chain_option
@plan_option
@click.option("--resume", help="Continue a run recorded in the ledger", is_flag=True)
@click.option("--dry-run", help="Show the execution order without sending anything", is_flag=True)
@click.option("--network", help="ape network choice, e.g. base:mainnet:alchemy", required=False)
@click.option("--account", "account_alias", help="ape account alias", required=False)
@click.option(
    "--continue-on-error",
    help="Keep running independent steps after a permanent failure",
    is_flag=True,
)
@max_attempts_option
@concurrency_option
@confirmations_option
@step_timeout_option
@force_option
@click.option("--yes", "-y", help="Skip confirmation and sign automatically", is_flag=True)
@json_option
@ledger_dir_option
@click.pass_context
def run(
    ctx,
    chain_id,
    plan_filepath,
    resume,
    dry_run,
    network,
    account_alias,
    continue_on_error,
    max_attempts,
    concurrency,
    confirmations,
    step_timeout,
    force,
    yes,
    as_json,
    ledger_dir,
):
    """Executes a deployment plan on one chain."""
    try:
        plan, graph = _load_plan(chain_id, plan_filepath)
        options = load_run_options(
            settings=plan.settings,
            overrides=dict(
                max_attempts=max_attempts,
                concurrency=concurrency,
                confirmations=confirmations,
                step_timeout=step_timeout,
                continue_on_error=True if continue_on_error else None,
                force=force or None,
            ),
        )
        ledger = RunLedger(ledger_directory(ledger_dir))
        if dry_run:
            _dry_run(plan, graph, ledger, as_json)
            ctx.exit(EXIT_SUCCESS)
        if not (resume or force):
            _refuse_published(ledger, chain_id, graph)
    except (PlanError, LedgerConsistencyError) as e:
        _fail(ctx, e)

    injected = ctx.obj or dict()
    verify = any(step.kind is StepKind.VERIFY for step in graph)
    with ExitStack() as stack:
        executor = injected.get("executor")
        verifier = injected.get("verifier")
        if executor is None:
            try:
                executor, verifier = stack.enter_context(
                    _ape_session(chain_id, network, account_alias, autosign=yes, verify=verify)
                )
            except (PlanError, ValueError, ImportError) as e:
                _fail(ctx, e)

        if not yes:
            satisfied = ledger.seed(chain_id).satisfied
            pending = [step for step in graph if step.id not in satisfied]
            confirm_run(chain_id, executor.deployer_address, pending, plan.constants)

        token = CancelToken()
        orchestrator = Orchestrator(
            executor=executor,
            verifier=verifier,
            ledger=ledger,
            options=options,
            sleep=injected.get("sleep", asyncio.sleep),
            cancel_token=token,
        )
        try:
            summary = asyncio.run(_run_until_done(orchestrator, plan, graph, token))
        except (PlanError, LedgerConsistencyError) as e:
            _fail(ctx, e)

    registry_filepath = plan.registry_filepath()
    if registry_filepath:
        registry_from_artifacts(ledger.artifacts(chain_id), output_filepath=registry_filepath)

    if as_json:
        click.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        summary.render()
    ctx.exit(summary.exit_code)


@cli.command()
@chain_option
@click.option(
    "--plan",
    "-p",
    "plan_filepath",
    help="Show the steps of this plan, including those not run yet",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=False,
)
@json_option
@ledger_dir_option
@click.pass_context
def status(ctx, chain_id, plan_filepath, as_json, ledger_dir):
    """Prints what the ledger records for a chain."""
    try:
        ledger = RunLedger(ledger_directory(ledger_dir))
        results = ledger.results(chain_id)
        state = ledger.seed(chain_id)
        step_ids = list(dict.fromkeys(result.step_id for result in results))
        if plan_filepath:
            _, graph = _load_plan(chain_id, plan_filepath)
            step_ids = [step.id for step in graph]
    except (PlanError, LedgerConsistencyError) as e:
        _fail(ctx, e)

    latest = {result.step_id: result for result in results}
    rows = list()
    for step_id in step_ids:
        success = state.succeeded.get(step_id)
        result = success or latest.get(step_id)
        artifact = result.artifact if result else None
        rows.append(
            {
                "step_id": step_id,
                "status": result.status.value if result else "pending",
                "attempts": state.attempts.get(step_id, 0),
                "artifact": artifact.name if artifact else None,
                "address": artifact.address if artifact else None,
                "generation": artifact.generation if artifact else None,
                "error": result.error if result and not result.succeeded else None,
            }
        )

    if as_json:
        click.echo(json.dumps({"chain_id": chain_id, "steps": rows}, indent=2))
        return
    if not rows:
        click.echo(f"(i) Nothing recorded for chain {chain_id} in {ledger.filepath(chain_id)}")
        return
    click.secho(f"Ledger {ledger.filepath(chain_id)}", bold=True)
    colors = {"success": "green", "transient_failure": "yellow", "permanent_failure": "red"}
    for row in rows:
        status_text = click.style(f"{row['status']:<18}", fg=colors.get(row["status"]))
        line = f"  {row['step_id']}  {status_text}  attempts={row['attempts']}"
        if row["address"]:
            line += f"  {row['artifact']}={row['address']}"
        click.echo(line)


@cli.command(name="export-registry")
@chain_option
@click.option(
    "--output",
    "-o",
    "output_filepath",
    help="Filepath of the registry file to write",
    type=click.Path(dir_okay=False, path_type=Path),
    required=True,
)
@ledger_dir_option
@click.pass_context
def export_registry(ctx, chain_id, output_filepath, ledger_dir):
    """Writes the registry of recorded artifacts for a chain."""
    try:
        ledger = RunLedger(ledger_directory(ledger_dir))
        artifacts = ledger.artifacts(chain_id)
    except LedgerConsistencyError as e:
        _fail(ctx, e)
    if not artifacts:
        _fail(ctx, ValueError(f"No artifacts recorded for chain {chain_id}."), EXIT_FAILURE)

    registry_from_artifacts(artifacts, output_filepath=output_filepath)
    click.secho(f"Registry written to {output_filepath}", fg="green")


if __name__ == "__main__":
    cli()
