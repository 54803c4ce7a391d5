"""garm-provider-azure executable.

The orchestrating host runs the provider once per operation and passes
everything through the environment::

    GARM_COMMAND=CreateInstance \\
    GARM_CONTROLLER_ID=... GARM_POOL_ID=... \\
    GARM_PROVIDER_CONFIG_FILE=/etc/garm/azure.toml \\
        garm-provider-azure < bootstrap.json

``CreateInstance`` reads the bootstrap request as JSON on stdin.  Results
are printed as JSON on stdout; errors go to stderr with exit status 1.
"""

from __future__ import annotations

import json
import os
import sys
from typing import IO, Any, Mapping

from pydantic import ValidationError

from garm_azure import __version__
from garm_azure.base.exceptions import GarmProviderError
from garm_azure.base.params import BootstrapInstance
from garm_azure.factory import new_provider

COMMANDS = (
    "CreateInstance",
    "DeleteInstance",
    "GetInstance",
    "ListInstances",
    "RemoveAllInstances",
    "Stop",
    "Start",
    "GetVersion",
)


class ExecutionError(Exception):
    """The host invoked the provider with a bad environment or input."""


def _require(env: Mapping[str, str], key: str) -> str:
    value = env.get(key, "")
    if not value:
        raise ExecutionError(f"missing {key}")
    return value


def run(env: Mapping[str, str], stdin: IO[str]) -> Any:
    """Execute the command described by *env* and return its result.

    Returns:
        A JSON-serialisable result, or ``None`` for commands without output.

    Raises:
        ExecutionError: On an unknown command or missing variables/input.
        GarmProviderError: If the provider operation fails.
    """
    command = _require(env, "GARM_COMMAND")
    if command not in COMMANDS:
        raise ExecutionError(f"unknown command {command!r}")
    if command == "GetVersion":
        return __version__

    provider = new_provider(
        _require(env, "GARM_PROVIDER_CONFIG_FILE"),
        _require(env, "GARM_CONTROLLER_ID"),
    )

    if command == "CreateInstance":
        try:
            data = json.load(stdin)
            bootstrap = BootstrapInstance.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise ExecutionError(f"invalid bootstrap params: {e}") from e
        if not bootstrap.pool_id:
            bootstrap.pool_id = env.get("GARM_POOL_ID", "")
        return provider.create_instance(bootstrap).model_dump(mode="json")
    if command == "DeleteInstance":
        provider.delete_instance(_require(env, "GARM_INSTANCE_ID"))
        return None
    if command == "GetInstance":
        return provider.get_instance(_require(env, "GARM_INSTANCE_ID")).model_dump(mode="json")
    if command == "ListInstances":
        instances = provider.list_instances(_require(env, "GARM_POOL_ID"))
        return [inst.model_dump(mode="json") for inst in instances]
    if command == "RemoveAllInstances":
        provider.remove_all_instances()
        return None
    if command == "Stop":
        provider.stop(_require(env, "GARM_INSTANCE_ID"), force=True)
        return None
    provider.start(_require(env, "GARM_INSTANCE_ID"))
    return None


def main(
    env: Mapping[str, str] | None = None,
    stdin: IO[str] | None = None,
    stdout: IO[str] | None = None,
) -> None:
    """CLI entry point.

    Args:
        env: Environment to read (defaults to ``os.environ``).
        stdin: Input stream (defaults to ``sys.stdin``).
        stdout: Output stream (defaults to ``sys.stdout``).
    """
    env = os.environ if env is None else env
    stdin = sys.stdin if stdin is None else stdin
    stdout = sys.stdout if stdout is None else stdout

    try:
        result = run(env, stdin)
    except (ExecutionError, GarmProviderError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if result is None:
        return
    if isinstance(result, (dict, list)):
        print(json.dumps(result, indent=2), file=stdout)
    else:
        print(result, file=stdout)


if __name__ == "__main__":
    main()
