"""
Credential Resolution
=====================
Finds a token for a CI platform without ever prompting the user.

Lookup order (first hit wins):
    1. Environment variable       — GITHUB_TOKEN / GITLAB_TOKEN
    2. Workspace-scoped token     — injected lookup, e.g. a stored OAuth token
    3. CLI cached auth            — `gh auth token` / `glab auth token`

No token is a normal outcome: resolve() returns None and the caller decides
what that means (the poller treats it as transient and retries).
"""
import logging
import os
import subprocess
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

WorkspaceTokenLookup = Callable[[str, str], Optional[str]]

_ENV_VARS: Dict[str, str] = {
    "github": "GITHUB_TOKEN",
    "gitlab": "GITLAB_TOKEN",
}

_CLI_COMMANDS: Dict[str, list] = {
    "github": ["gh", "auth", "token"],
    "gitlab": ["glab", "auth", "token"],
}

CLI_TIMEOUT_SECONDS = 5
CLI_MISS_TTL_SECONDS = 60.0


class TokenResolver:
    """
    Resolves platform tokens from env, workspace storage and CLI tools.

    CLI lookups spawn a process. A token found that way is cached per
    platform for the resolver's lifetime; a miss (CLI missing, not logged
    in, timed out) is remembered for miss_ttl_seconds so a later
    `gh auth login` is still picked up without spawning on every poll.
    """

    def __init__(
        self,
        workspace_lookup: Optional[WorkspaceTokenLookup] = None,
        use_cli: bool = True,
        miss_ttl_seconds: float = CLI_MISS_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._workspace_lookup = workspace_lookup
        self._use_cli = use_cli
        self._miss_ttl = miss_ttl_seconds
        self._clock = clock
        self._cli_cache: Dict[str, str] = {}
        self._cli_misses: Dict[str, float] = {}

    def resolve(self, platform: str, workspace_id: Optional[str] = None) -> Optional[str]:
        env_var = _ENV_VARS.get(platform)
        if env_var:
            token = os.getenv(env_var)
            if token:
                return token

        if workspace_id and self._workspace_lookup:
            try:
                token = self._workspace_lookup(platform, workspace_id)
            except Exception as e:
                logger.warning("Workspace token lookup failed for %s/%s: %s", platform, workspace_id, e)
                token = None
            if token:
                return token

        if self._use_cli:
            return self._cli_token(platform)
        return None

    def _cli_token(self, platform: str) -> Optional[str]:
        if platform in self._cli_cache:
            return self._cli_cache[platform]

        command = _CLI_COMMANDS.get(platform)
        if not command:
            return None

        missed_at = self._cli_misses.get(platform)
        if missed_at is not None and self._clock() - missed_at < self._miss_ttl:
            return None

        token: Optional[str] = None
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=CLI_TIMEOUT_SECONDS,
            )
            if result.returncode == 0:
                token = result.stdout.strip() or None
        except (FileNotFoundError, subprocess.TimeoutExpired):
            logger.debug("%s not available for token lookup", command[0])

        if token:
            self._cli_cache[platform] = token
            self._cli_misses.pop(platform, None)
        else:
            self._cli_misses[platform] = self._clock()
        return token
