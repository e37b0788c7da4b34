import os
import re
import yaml
from pathlib import Path
from typing import Any, Dict

ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]+))?\}")

ALLOWED_SECTIONS = {"operator", "store", "admin", "kubernetes", "instances"}

def interpolate_env_vars(content: str) -> str:
    """Replace ${VAR} or ${VAR:default} with environment variables."""
    def replace_match(match: re.Match) -> str:
        var_name = match.group(1)
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.environ.get(var_name, default_value)

    return ENV_VAR_PATTERN.sub(replace_match, content)

def load_config(path: Path) -> Dict[str, Any]:
    """
    Load operator.yaml with environment variable interpolation.

    Keeps only the known sections: operator, store, admin, kubernetes, instances.
    A missing file yields an empty configuration; a malformed one raises ValueError
    so the operator never starts against a half-read configuration.
    """
    if not path.exists():
        return {}

    content = path.read_text()
    interpolated_content = interpolate_env_vars(content)
    try:
        full_config = yaml.safe_load(interpolated_content) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid configuration file {path}: {exc}") from exc

    if not isinstance(full_config, dict):
        raise ValueError(f"Invalid configuration file {path}: top level must be a mapping")

    return {k: v for k, v in full_config.items() if k in ALLOWED_SECTIONS}
