"""Namespace resolution for per-user isolation in the event store.

Resolution order, first success wins:

1. explicit override (``ROLLCALL_NAMESPACE`` / ``namespace`` config key)
2. local part of ``git config user.email``
3. the operating system account name
4. a random identifier generated once and persisted in ``user_id_path``

Whatever step succeeds, the result goes through :func:`sanitize_namespace`.
"""

import asyncio
import getpass
import logging
import random
import re
import string
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

FALLBACK_NAMESPACE = "unknown-user"
MAX_NAMESPACE_LENGTH = 50

_INVALID_CHARS = re.compile(r"[^a-z0-9\-_]")
_DASH_RUNS = re.compile(r"-+")


def sanitize_namespace(value: Optional[str]) -> str:
    """Reduce *value* to a store-safe key of at most 50 characters."""
    key = (value or "").lower()
    key = _INVALID_CHARS.sub("-", key)
    key = _DASH_RUNS.sub("-", key)
    key = key.strip("-")
    key = key[:MAX_NAMESPACE_LENGTH]
    return key or FALLBACK_NAMESPACE


def generate_user_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"user-{int(time.time() * 1000)}-{suffix}"


class NamespaceResolver:
    """Derives and caches the isolation key for this operator."""

    def __init__(self, override: Optional[str] = None,
                 user_id_path: Optional[str | Path] = None,
                 git_timeout: float = 1.0):
        self.override = override
        self.user_id_path = Path(user_id_path).expanduser() if user_id_path else None
        self.git_timeout = git_timeout
        self._namespace: Optional[str] = None

    async def resolve(self) -> str:
        if self._namespace is None:
            raw, source = await self._resolve_raw()
            self._namespace = sanitize_namespace(raw)
            logger.debug("Namespace '%s' resolved from %s", self._namespace, source)
        return self._namespace

    async def _resolve_raw(self) -> tuple[str, str]:
        if self.override:
            return self.override, "override"

        email = await self.git_email()
        if email:
            return email.split("@", 1)[0], "git user.email"

        username = self.os_username()
        if username:
            return username, "os username"

        return await asyncio.to_thread(self.persisted_id), "persisted id"

    async def git_email(self) -> Optional[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                "git", "config", "user.email",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError:
            return None
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.git_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return None
        if proc.returncode != 0:
            return None
        return stdout.decode(errors="replace").strip() or None

    @staticmethod
    def os_username() -> Optional[str]:
        try:
            return getpass.getuser() or None
        except (KeyError, OSError):
            # No passwd entry and no USER/LOGNAME variables
            return None

    def persisted_id(self) -> str:
        """Read the stored identifier, generating and storing it on first use."""
        path = self.user_id_path or Path.home() / ".rollcall" / "user-id"
        try:
            existing = path.read_text().strip()
        except OSError:
            existing = ""
        if existing:
            return existing

        user_id = sanitize_namespace(generate_user_id())
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(user_id)
        except OSError as exc:
            logger.warning("Failed to store user id at %s, using temporary id: %s", path, exc)
        return user_id
