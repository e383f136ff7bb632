from __future__ import annotations

import getpass
import logging
import os
from typing import Mapping

from reviewgate.errors import IdentityError
from reviewgate.services.git_client import GitClient

logger = logging.getLogger(__name__)


async def resolve_reviewer(
    git: GitClient,
    *,
    require: bool = False,
    env: Mapping[str, str] | None = None,
) -> str:
    """Return the identity recorded as ``approved_by`` / ``rejected_by``.

    Lookup order: ``REVIEWGATE_REVIEWER``, the user's global git email, the
    user's global git name. The repository-local identity is skipped because
    it holds the bot identity written by :class:`RepositoryLifecycle`.

    When nothing is found the OS login name is used, unless ``require`` is set,
    in which case :class:`IdentityError` is raised.
    """
    env = os.environ if env is None else env

    explicit = env.get("REVIEWGATE_REVIEWER", "").strip()
    if explicit:
        return explicit

    for key in ("user.email", "user.name"):
        value = await git.config_get(key, scope="--global")
        if value:
            return value

    if require:
        raise IdentityError(
            "Could not determine reviewer identity. Set REVIEWGATE_REVIEWER or "
            "configure git: git config --global user.email <you@example.com>"
        )

    fallback = _os_user(env)
    logger.warning("No git identity configured, recording reviewer as %s", fallback)
    return fallback


def _os_user(env: Mapping[str, str]) -> str:
    for key in ("USER", "USERNAME", "LOGNAME"):
        if env.get(key):
            return env[key]
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"
