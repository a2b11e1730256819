"""
Service for checking out application repositories.

Handles:
- Per-deployment working directories
- Shallow single-branch clones with classified failures
- Build descriptor precondition check
- package-lock.json fix-up for npm projects
"""
import asyncio
import logging
import os
import re
import shutil
from typing import List, Optional, Tuple

from shipyard.core.config import settings
from shipyard.core.exceptions import (
    BranchNotFoundError,
    MissingBuildDescriptorError,
    RepositoryFetchError,
    RepositoryUnreachableError,
    WorkspaceError,
)
from shipyard.models.app import DEFAULT_BRANCH

logger = logging.getLogger(__name__)

_BRANCH_NOT_FOUND = re.compile(
    r"remote branch .+ not found|could not find remote branch|not found in upstream",
    re.IGNORECASE,
)
_FILESYSTEM_FAILURE = re.compile(
    r"could not create (leading directories|work tree)|already exists and is not an empty directory"
    r"|no space left on device|read-only file system|unable to write",
    re.IGNORECASE,
)
_NPM_CI = re.compile(r"npm\s+ci\b|npmci\b", re.IGNORECASE)


class RepositoryFetcher:
    """
    Clones repositories into isolated per-deployment directories.

    Every deployment gets `{work_dir}/deployment-{id}`, recreated from scratch
    on each clone, so no two deployments ever share a checkout.
    """

    def __init__(
        self,
        work_dir: Optional[str] = None,
        clone_timeout: Optional[int] = None,
        descriptor: Optional[str] = None,
    ):
        """
        Initialize RepositoryFetcher.

        Args:
            work_dir: Root directory for checkouts
            clone_timeout: Seconds before a clone is abandoned
            descriptor: Build descriptor file name required at the repo root
        """
        self.work_dir = work_dir or settings.WORK_DIR
        self.clone_timeout = clone_timeout or settings.GIT_CLONE_TIMEOUT
        self.descriptor = descriptor or settings.BUILD_DESCRIPTOR

    def workspace_path(self, deployment_id: int) -> str:
        return os.path.join(self.work_dir, f"deployment-{deployment_id}")

    async def _run_command(
        self,
        cmd: List[str],
        cwd: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> Tuple[int, str, str]:
        """
        Run an external command.

        Args:
            cmd: Command arguments
            cwd: Working directory
            timeout: Timeout in seconds

        Returns:
            Tuple of (return_code, stdout, stderr)

        Raises:
            OSError: If the executable cannot be started
            asyncio.TimeoutError: If the command outlives the timeout
        """
        logger.debug(f"Running command: {' '.join(cmd)}")

        # Never block on a credential prompt
        env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise

        return (
            process.returncode,
            stdout.decode(errors="replace").strip() if stdout else "",
            stderr.decode(errors="replace").strip() if stderr else "",
        )

    def _prepare_workspace(self, repo_dir: str) -> None:
        if os.path.exists(repo_dir):
            shutil.rmtree(repo_dir)
        os.makedirs(os.path.dirname(repo_dir), exist_ok=True)

    def _classify(self, repo_url: str, branch: str, return_code: int, output: str) -> RepositoryFetchError:
        reason = output or f"git exited with code {return_code}"
        if _BRANCH_NOT_FOUND.search(output):
            return BranchNotFoundError(repo_url, branch, reason)
        if _FILESYSTEM_FAILURE.search(output):
            return WorkspaceError(repo_url, reason)
        return RepositoryUnreachableError(repo_url, reason)

    async def clone(self, repo_url: str, deployment_id: int, branch: Optional[str] = None) -> str:
        """
        Shallow-clone one branch of a repository.

        Args:
            repo_url: Remote repository URL
            deployment_id: Deployment the checkout belongs to
            branch: Branch to check out (empty means main)

        Returns:
            Path of the fresh checkout

        Raises:
            RepositoryUnreachableError: Remote unreachable, auth refused or timed out
            BranchNotFoundError: Branch does not exist on the remote
            WorkspaceError: Local directory could not be prepared or written
        """
        branch = branch or DEFAULT_BRANCH
        repo_dir = self.workspace_path(deployment_id)
        logger.info(f"Cloning {repo_url} (branch {branch}) into {repo_dir}")

        try:
            await asyncio.to_thread(self._prepare_workspace, repo_dir)
        except OSError as e:
            raise WorkspaceError(repo_url, f"failed to prepare {repo_dir}: {e}") from e

        cmd = [
            "git", "clone",
            "--branch", branch,
            "--single-branch",
            "--depth", "1",
            repo_url, repo_dir,
        ]
        try:
            return_code, stdout, stderr = await self._run_command(cmd, timeout=self.clone_timeout)
        except asyncio.TimeoutError as e:
            raise RepositoryUnreachableError(
                repo_url, f"git clone timed out after {self.clone_timeout} seconds"
            ) from e
        except OSError as e:
            raise WorkspaceError(repo_url, f"failed to run git: {e}") from e

        if return_code != 0:
            error = self._classify(repo_url, branch, return_code, stderr or stdout)
            logger.error(f"Clone of {repo_url} failed ({error.kind}): {error.message}")
            raise error

        logger.info(f"Cloned {repo_url} into {repo_dir}")
        return repo_dir

    def check_build_descriptor(self, repo_path: str) -> str:
        """
        Verify the build descriptor exists at the repository root.

        Args:
            repo_path: Checkout directory

        Returns:
            Path of the descriptor

        Raises:
            MissingBuildDescriptorError: If the file is absent
        """
        path = os.path.join(repo_path, self.descriptor)
        if not os.path.isfile(path):
            logger.error(f"{self.descriptor} not found at {path}")
            raise MissingBuildDescriptorError(repo_path)
        return path

    async def ensure_package_lock(self, repo_path: str) -> Optional[str]:
        """
        Make `npm ci` builds work for projects without a lockfile.

        Tries `npm install --package-lock-only` first and falls back to
        rewriting `npm ci` as `npm install` in the build descriptor.

        Args:
            repo_path: Checkout directory

        Returns:
            "generated", "rewritten" or None when nothing was changed
        """
        if not os.path.isfile(os.path.join(repo_path, "package.json")):
            return None
        if os.path.isfile(os.path.join(repo_path, "package-lock.json")):
            return None

        logger.info(f"package.json without package-lock.json in {repo_path}")

        if shutil.which("npm"):
            try:
                return_code, _, stderr = await self._run_command(
                    ["npm", "install", "--package-lock-only"],
                    cwd=repo_path,
                    timeout=self.clone_timeout,
                )
                if return_code == 0:
                    logger.info("Generated package-lock.json with npm")
                    return "generated"
                logger.warning(f"npm could not generate package-lock.json: {stderr}")
            except (OSError, asyncio.TimeoutError) as e:
                logger.warning(f"npm could not generate package-lock.json: {e}")

        if self._rewrite_npm_ci(repo_path):
            return "rewritten"
        return None

    def _rewrite_npm_ci(self, repo_path: str) -> bool:
        # Undecodable bytes pass through unchanged
        path = os.path.join(repo_path, self.descriptor)
        if not os.path.isfile(path):
            return False

        with open(path, "r", encoding="utf-8", errors="surrogateescape") as f:
            content = f.read()

        updated = _NPM_CI.sub("npm install", content)
        if updated == content:
            logger.debug(f"{self.descriptor} does not use 'npm ci', no change needed")
            return False

        with open(path, "w", encoding="utf-8", errors="surrogateescape") as f:
            f.write(updated)
        logger.info(f"Rewrote 'npm ci' to 'npm install' in {path}")
        return True

    def cleanup(self, deployment_id: int) -> bool:
        """
        Remove a deployment's checkout.

        Returns:
            True if a directory was removed
        """
        repo_dir = self.workspace_path(deployment_id)
        if not os.path.exists(repo_dir):
            return False
        try:
            shutil.rmtree(repo_dir)
        except OSError as e:
            logger.warning(f"Failed to remove workspace {repo_dir}: {e}")
            return False
        logger.debug(f"Removed workspace {repo_dir}")
        return True
