import os
import re

_ENV_VAR = re.compile(r'\$\{([^}]+)\}')


def expand_env_vars(content: str) -> str:
    """Replace ``${VAR_NAME}`` with the environment value (empty when unset)."""
    return _ENV_VAR.sub(lambda match: os.environ.get(match.group(1), ''), content)
