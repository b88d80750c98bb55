"""Scope resolution (fixed name, environment variable, or current git branch)."""

import logging
import os
import subprocess

from .config import SiteScribeConfig
from .errors import ConfigMissingError
from .models import Scope
from .utils import sanitize_scope_name

logger = logging.getLogger(__name__)


def _current_git_branch(cwd) -> str | None:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=5,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"[SCOPE] git branch lookup failed: {e}")
        return None
    return result.stdout.strip() or None


def _raw_scope_name(config: SiteScribeConfig) -> str:
    if config.scope.mode == "fixed":
        return config.scope.fixed

    if config.scope.mode == "env":
        value = os.getenv(config.scope.env_var)
        if not value:
            raise ConfigMissingError(f"Scope mode is env but {config.scope.env_var} is not set.")
        return value

    branch = _current_git_branch(config.root_dir)
    if branch is None:
        logger.warning(f"[SCOPE] Could not read git branch, using fixed scope {config.scope.fixed!r}")
        return config.scope.fixed
    return branch


def resolve_scope(config: SiteScribeConfig, override: str | None = None) -> Scope:
    """Resolve the scope for this invocation. An explicit override always wins."""
    raw_name = override if override is not None else _raw_scope_name(config)
    scope_name = sanitize_scope_name(raw_name) if config.scope.sanitize else raw_name

    if not scope_name:
        raise ConfigMissingError(f"Scope name {raw_name!r} is empty after sanitization")

    return Scope(project_id=config.project_id, scope_name=scope_name)
