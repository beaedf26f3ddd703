"""Push the crawl document to a git remote every few checkpoints."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from pathlib import Path
from typing import Any, List, Optional, Sequence

logger = logging.getLogger(__name__)

COMMIT_MESSAGE = "Auto-update crawl data"


def authenticated_url(repo_url: str, token: str) -> str:
    if not token or "://" not in repo_url:
        return repo_url
    scheme, _, rest = repo_url.partition("://")
    if "@" in rest.split("/", 1)[0]:
        return repo_url
    return f"{scheme}://{token}@{rest}"


class GitSync:
    """Checkpoint listener that commits and pushes the document.

    Runs on a background thread; a sync already in progress causes the next
    one to be skipped. Errors are logged and never reach the crawl.
    """

    def __init__(
        self,
        repo_url: str,
        token: str,
        every: int = 10,
        workdir: str = ".",
        branch: str = "master",
        runner=subprocess.run,
    ) -> None:
        self.repo_url = repo_url
        self.token = token
        self.every = max(1, int(every))
        self.workdir = Path(workdir)
        self.branch = branch
        self._run = runner
        self._count = 0
        self._busy = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.pushes = 0

    @classmethod
    def from_config(cls, config: Any) -> Optional["GitSync"]:
        token = str(config.get("sync_token") or "")
        repo_url = str(config.get("sync_repo_url") or "")
        if not token or not repo_url:
            return None
        return cls(repo_url, token, every=int(config.get("sync_every") or 10), workdir=str(config.get("sync_path") or "."))

    def on_checkpoint(self, path: Path) -> None:
        self._count += 1
        if self._count % self.every:
            return
        if not self._busy.acquire(blocking=False):
            logger.debug("git sync still running, skipping")
            return
        self._thread = threading.Thread(target=self._sync_locked, args=(Path(path),), daemon=True)
        self._thread.start()

    def wait(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _sync_locked(self, path: Path) -> None:
        try:
            self.sync(path)
        finally:
            self._busy.release()

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return self._run(
            ["git", *args],
            cwd=str(self.workdir),
            capture_output=True,
            text=True,
            check=check,
        )

    def _commands(self, path: Path) -> List[Sequence[str]]:
        try:
            relative = os.path.relpath(path.resolve(), self.workdir.resolve())
        except ValueError:
            relative = str(path)
        return [
            ("config", "user.email", "crawler@localhost"),
            ("config", "user.name", "Crawler"),
            ("remote", "set-url", "origin", authenticated_url(self.repo_url, self.token)),
            ("add", relative),
        ]

    def sync(self, path: Path) -> bool:
        try:
            inside = self._git("rev-parse", "--is-inside-work-tree", check=False)
            if inside.returncode != 0:
                self._git("init")
                self._git("remote", "add", "origin", authenticated_url(self.repo_url, self.token))
                self._git("fetch", "origin", self.branch)
                self._git("reset", "--soft", f"origin/{self.branch}")
            for command in self._commands(path):
                self._git(*command)
            status = self._git("status", "--porcelain")
            if not status.stdout.strip():
                logger.info("git sync: nothing to commit")
                return False
            self._git("commit", "-m", COMMIT_MESSAGE)
            self._git("push", "origin", f"HEAD:{self.branch}", "--force")
        except (OSError, subprocess.CalledProcessError) as exc:
            stderr = getattr(exc, "stderr", "") or ""
            logger.warning("git sync failed: %s %s", exc.__class__.__name__, stderr.replace(self.token, "***").strip())
            return False
        self.pushes += 1
        logger.info("git sync pushed %s", path.name)
        return True
