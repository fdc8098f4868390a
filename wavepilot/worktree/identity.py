"""Identity of the user a session runs for."""

import getpass
import logging
from dataclasses import dataclass

from ..utils.git import GitError, GitOps

logger = logging.getLogger(__name__)


@dataclass
class UserIdentity:
    name: str
    email: str


async def get_current_user(git: GitOps) -> UserIdentity:
    """Read ``user.name``/``user.email`` from git config.

    Falls back to the OS login name and ``"unknown"`` when git has no value.
    """
    try:
        name = await git.get_config("user.name")
        email = await git.get_config("user.email")
    except GitError as e:
        logger.debug(f"git config unavailable: {e}")
        name = email = None

    if not name:
        try:
            name = getpass.getuser()
        except (KeyError, OSError):
            name = "unknown"

    return UserIdentity(name=name, email=email or "unknown")
