import os
from typing import Optional

from dotenv import load_dotenv
from distributor.errors import MissingEnvironmentVariableException

load_dotenv()


def env_var(accessor: str) -> str:
    """
    Attempt to fetch an environment variable and throw
    an error if not found
    """
    var = os.environ.get(accessor)
    if not var:
        raise MissingEnvironmentVariableException(accessor)
    return var


def optional_env_var(*accessors: str, default: Optional[str] = None) -> Optional[str]:
    """Return the first of `accessors` that is set, or `default`"""
    for accessor in accessors:
        var = os.environ.get(accessor)
        if var:
            return var.strip()
    return default


def rpc_url() -> str:
    var = optional_env_var("RPC_URL", "NETWORK_RPC_URL")
    if not var:
        raise MissingEnvironmentVariableException("RPC_URL")
    return var


def private_key() -> str:
    return env_var("PRIVATE_KEY")


LIVE_CALLS_ENABLED = os.environ.get("PYTEST_LIVE_CALLS_ENABLED") == "TRUE"
