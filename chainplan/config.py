import os
import typing
from pathlib import Path

from chainplan.constants import (
    CONCURRENCY_ENVVAR,
    CONFIRMATIONS_ENVVAR,
    LEDGER_DIR,
    LEDGER_DIR_ENVVAR,
    MAX_ATTEMPTS_ENVVAR,
    STEP_TIMEOUT_ENVVAR,
)
from chainplan.errors import InvalidPlanError
from chainplan.orchestrator import RunOptions
from chainplan.retry import BackoffPolicy

# run option -> (environment variable, type)
ENVIRONMENT_OPTIONS = {
    "max_attempts": (MAX_ATTEMPTS_ENVVAR, int),
    "concurrency": (CONCURRENCY_ENVVAR, int),
    "confirmations": (CONFIRMATIONS_ENVVAR, int),
    "step_timeout": (STEP_TIMEOUT_ENVVAR, float),
}

SETTINGS_OPTIONS = {
    "max_attempts": int,
    "concurrency": int,
    "confirmations": int,
    "step_timeout": float,
    "continue_on_error": bool,
}


def options_from_environment(
    environ: typing.Optional[typing.Mapping[str, str]] = None
) -> typing.Dict[str, typing.Any]:
    environ = os.environ if environ is None else environ
    options = dict()
    for name, (envvar, cast) in ENVIRONMENT_OPTIONS.items():
        value = environ.get(envvar)
        if value in (None, ""):
            continue
        try:
            options[name] = cast(value)
        except ValueError:
            raise InvalidPlanError(f"{envvar} must be a {cast.__name__}, got {value!r}.")
    return options


def options_from_settings(settings: typing.Dict[str, typing.Any]) -> typing.Dict[str, typing.Any]:
    """Run options declared in a plan's 'settings' section."""
    unknown = set(settings) - set(SETTINGS_OPTIONS) - {"backoff"}
    if unknown:
        raise InvalidPlanError(f"Unknown plan settings: {', '.join(sorted(unknown))}")
    options = dict()
    for name, cast in SETTINGS_OPTIONS.items():
        if settings.get(name) is None:
            continue
        try:
            options[name] = cast(settings[name])
        except (TypeError, ValueError):
            raise InvalidPlanError(f"Plan setting '{name}' must be a {cast.__name__}.")
    if settings.get("backoff") is not None:
        if not isinstance(settings["backoff"], dict):
            raise InvalidPlanError("Plan setting 'backoff' must be a mapping.")
        try:
            options["backoff"] = BackoffPolicy.from_config(settings["backoff"])
        except (TypeError, ValueError) as e:
            raise InvalidPlanError(f"Invalid backoff settings: {e}")
    return options


def load_run_options(
    settings: typing.Optional[typing.Dict[str, typing.Any]] = None,
    overrides: typing.Optional[typing.Dict[str, typing.Any]] = None,
    environ: typing.Optional[typing.Mapping[str, str]] = None,
) -> RunOptions:
    """
    Layers run options: built-in defaults, then environment variables,
    then plan settings, then command line overrides (None means unset).
    """
    values = dict()
    values.update(options_from_environment(environ))
    values.update(options_from_settings(settings or dict()))
    values.update({k: v for k, v in (overrides or dict()).items() if v is not None})
    if "force" in values:
        values["force"] = frozenset(values["force"])

    options = RunOptions(**values)
    try:
        options.validate()
    except ValueError as e:
        raise InvalidPlanError(f"Invalid run options: {e}")
    return options


def ledger_directory(
    value: typing.Optional[Path] = None,
    environ: typing.Optional[typing.Mapping[str, str]] = None,
) -> Path:
    environ = os.environ if environ is None else environ
    if value:
        return Path(value)
    if environ.get(LEDGER_DIR_ENVVAR):
        return Path(environ[LEDGER_DIR_ENVVAR])
    return LEDGER_DIR
