import logging
import os
import subprocess
import time
from pathlib import Path

from .config import Settings
from .exceptions import InventoryError
from .models import DownloadBatch, InstalledPackage, PackageIdentity, RepoId
from .repo_parser import parse_installed_output, parse_repolist_output, parse_repoquery_output

logger = logging.getLogger(__name__)

IDENTITY_QF = "%{name}|%{epoch}|%{version}|%{release}|%{arch}"
INSTALLED_QF = IDENTITY_QF + "|%{ui_from_repo}"


def run_command(cmd: list[str], timeout: float, input_text: str | None = None) -> subprocess.CompletedProcess | None:
    """
    Runs an external command with a timeout.
    Returns the completed process (any exit status), or None if the command
    timed out or could not be started.
    """
    logger.debug(f"Executing: {' '.join(cmd)}")
    try:
        return subprocess.run(cmd, input=input_text, capture_output=True, text=True, timeout=timeout, check=False)
    except subprocess.TimeoutExpired:
        logger.warning(f"Command timed out after {timeout}s: {' '.join(cmd[:4])} ...")
        return None
    except FileNotFoundError:
        logger.error(f"Command not found: {cmd[0]}")
        return None
    except OSError as e:
        logger.error(f"Could not run {cmd[0]}: {e}")
        return None


def describe_failure(result: subprocess.CompletedProcess | None, timeout: float) -> str:
    """Short human readable reason for a failed command."""
    if result is None:
        return f"timed out or not runnable (limit {timeout}s)"
    stderr_lines = [line for line in (result.stderr or "").splitlines() if line.strip()]
    if stderr_lines:
        return f"exit status {result.returncode}: {stderr_lines[-1].strip()}"
    return f"exit status {result.returncode}"


def needs_elevation(settings: Settings, path: Path | None = None) -> bool:
    """True if writes to `path` must go through sudo."""
    if not settings.elevate or os.geteuid() == 0:
        return False
    if path is None:
        return True
    existing = Path(path)
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    return not os.access(existing, os.W_OK)


def privileged(cmd: list[str]) -> list[str]:
    return ["sudo", "-n", *cmd]


class DnfClient:
    """Answers 'what is installed' and 'what does repository R offer' via dnf."""

    def __init__(self, settings: Settings, runner=run_command):
        self.settings = settings
        self.runner = runner

    def _arch_option(self) -> list[str]:
        return [f"--arch={','.join(self.settings.architectures)}"] if self.settings.architectures else []

    def _query(self, cmd: list[str]) -> str | None:
        """Runs a read-only dnf query with retries, returning stdout or None."""
        max_retries = max(1, self.settings.max_retries)
        for attempt in range(max_retries):
            result = self.runner(cmd, self.settings.dnf_query_timeout)
            if result is not None and result.returncode == 0:
                return result.stdout
            reason = describe_failure(result, self.settings.dnf_query_timeout)
            logger.warning(f"dnf query failed on attempt {attempt + 1}/{max_retries} ({reason}): {' '.join(cmd[:3])}")
            if attempt + 1 < max_retries:
                # Basic exponential backoff
                delay = self.settings.retry_delay * (2 ** attempt)
                logger.debug(f"Retrying in {delay} seconds...")
                time.sleep(delay)
        return None

    def list_installed(self) -> list[InstalledPackage]:
        cmd = ["dnf", "repoquery", "--installed", "-q", "--qf", INSTALLED_QF]
        output = self._query(cmd)
        if output is None:
            raise InventoryError("Could not list installed packages")
        installed = parse_installed_output(output)
        if not installed:
            raise InventoryError("Installed package query returned no packages")
        logger.info(f"Found {len(installed)} installed packages")
        return installed

    def list_repositories(self) -> tuple[set[RepoId], set[RepoId]]:
        """Returns (enabled, disabled) repository ids."""
        enabled_out = self._query(["dnf", "repolist", "--enabled", "-q"])
        if enabled_out is None:
            raise InventoryError("Could not list enabled repositories")
        disabled_out = self._query(["dnf", "repolist", "--disabled", "-q"])
        if disabled_out is None:
            logger.warning("Could not list disabled repositories, assuming none")
            disabled_out = ""
        enabled = set(parse_repolist_output(enabled_out))
        disabled = set(parse_repolist_output(disabled_out)) - enabled
        logger.info(f"Enabled repositories: {len(enabled)}, disabled: {len(disabled)}")
        return enabled, disabled

    def query_repository(self, repo: RepoId, names) -> set[PackageIdentity] | None:
        """
        Lists what `repo` offers for the given package names.
        Returns None if any query chunk failed (repository state unknown).
        """
        names = sorted(set(names))
        if not names:
            return set()
        packages = set()
        chunk = max(1, self.settings.repoquery_chunk_size)
        for start in range(0, len(names), chunk):
            cmd = ["dnf", "repoquery", "-q", "--disablerepo=*", f"--enablerepo={repo}",
                   *self._arch_option(), "--qf", IDENTITY_QF, *names[start:start + chunk]]
            output = self._query(cmd)
            if output is None:
                logger.error(f"Inventory query failed for repository {repo}")
                return None
            packages |= parse_repoquery_output(output)
        return packages

    def installed_origin(self, identity: PackageIdentity) -> str | None:
        """Asks the installed package database which repository a package came from."""
        cmd = ["dnf", "repoquery", "--installed", "-q", "--qf", "%{from_repo}", str(identity)]
        result = self.runner(cmd, self.settings.dnf_query_timeout)
        if result is None or result.returncode != 0:
            return None
        origins = [line.strip().lstrip("@") for line in result.stdout.splitlines() if line.strip()]
        return origins[0] if origins else None

    def download(self, batch: DownloadBatch) -> tuple[bool, str]:
        """
        Fetches all specs of a batch into its directory with one dnf call.
        dnf only reports aggregate success, so the result is all-or-nothing.
        """
        cmd = ["dnf", "download", "-q", f"--destdir={batch.directory}", *self._arch_option()]
        if batch.enable_repo:
            cmd.append(f"--enablerepo={batch.repo}")
        cmd.extend(batch.specs)
        if needs_elevation(self.settings, batch.directory):
            cmd = privileged(cmd)
        result = self.runner(cmd, self.settings.dnf_download_timeout)
        if result is not None and result.returncode == 0:
            return True, ""
        return False, describe_failure(result, self.settings.dnf_download_timeout)
