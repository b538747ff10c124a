import logging
import shutil
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from .config import Settings
from .dnf import describe_failure, needs_elevation, privileged, run_command
from .models import RepoId, RepositoryRegistry

logger = logging.getLogger(__name__)

REPOMD_PATH = Path("repodata") / "repomd.xml"


def createrepo_command() -> str:
    """Prefers createrepo_c, falling back to the legacy createrepo."""
    for candidate in ("createrepo_c", "createrepo"):
        if shutil.which(candidate):
            return candidate
    return "createrepo_c"


def newest_package_mtime(package_dir: Path) -> float | None:
    mtimes = [p.stat().st_mtime for p in package_dir.glob("*.rpm")] if package_dir.is_dir() else []
    return max(mtimes) if mtimes else None


def index_mtime(repo_dir: Path) -> float | None:
    try:
        return (repo_dir / REPOMD_PATH).stat().st_mtime
    except OSError:
        return None


class MetadataSyncCoordinator:
    """Regenerates indexes of changed repositories and replicates the mirror tree."""

    def __init__(self, settings: Settings, registry: RepositoryRegistry, runner=run_command):
        self.settings = settings
        self.registry = registry
        self.runner = runner

    def manual_repos_needing_update(self) -> list[RepoId]:
        """Manual repositories whose newest package is newer than their index."""
        stale = []
        for repo in sorted(self.registry.manual - self.registry.excluded):
            newest = newest_package_mtime(self.registry.package_dir(repo))
            if newest is None:
                continue
            generated = index_mtime(self.registry.repo_dir(repo))
            if generated is None or newest > generated:
                stale.append(repo)
        return stale

    def targets(self, changed_repos) -> list[RepoId]:
        managed = {r for r in changed_repos if self.registry.is_managed(r)}
        return sorted(managed | set(self.manual_repos_needing_update()))

    def regenerate(self, repo: RepoId) -> bool:
        repo_dir = self.registry.repo_dir(repo)
        cmd = [createrepo_command(), "--update", str(repo_dir)]
        if needs_elevation(self.settings, repo_dir):
            cmd = privileged(cmd)
        if self.settings.dry_run:
            logger.info(f"[dry-run] Would run: {' '.join(cmd)}")
            return True
        logger.info(f"Updating repository metadata for {repo}")
        result = self.runner(cmd, self.settings.createrepo_timeout)
        if result is None or result.returncode != 0:
            logger.error(f"Metadata update failed for {repo}: {describe_failure(result, self.settings.createrepo_timeout)}")
            return False
        return True

    def regenerate_changed(self, changed_repos) -> tuple[list[RepoId], list[RepoId]]:
        """
        Regenerates each target repository exactly once.
        Returns (regenerated, failed); a failure never stops the others.
        """
        targets = self.targets(changed_repos)
        if not targets:
            logger.info("No repository changed; metadata left as is")
            return [], []
        logger.info(f"Updating repository metadata for {len(targets)} changed repositories only")
        done, failed = [], []
        workers = max(1, min(self.settings.classify_parallel, len(targets)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="Createrepo") as executor:
            futures = {executor.submit(self.regenerate, repo): repo for repo in targets}
            for future in as_completed(futures):
                repo = futures[future]
                try:
                    ok = future.result()
                except Exception as e:
                    logger.error(f"Metadata update for {repo} raised: {e}")
                    ok = False
                (done if ok else failed).append(repo)
        return sorted(done), sorted(failed)

    def replicate(self) -> bool | None:
        """
        Mirrors the local tree to the shared location, deleting files that no
        longer exist locally. Disabled repositories are never replicated.
        Returns None when replication was skipped.
        """
        shared = self.settings.shared_repo_path
        if shared is None:
            logger.info("No shared repository path configured; skipping sync")
            return None
        if not Path(shared).is_dir():
            logger.warning(f"Shared repository path {shared} is not available; skipping sync")
            return None

        cmd = ["rsync", "-a", "--delete"]
        for repo in sorted(self.registry.disabled | self.registry.excluded):
            cmd.append(f"--exclude=/{repo}/")
        if self.settings.dry_run:
            cmd.append("--dry-run")
        cmd.extend([f"{self.registry.repo_root}/", f"{shared}/"])

        logger.info(f"Syncing {shared} with {self.registry.repo_root}")
        result = self.runner(cmd, self.settings.rsync_timeout)
        if result is None or result.returncode != 0:
            logger.error(f"Sync failed: {describe_failure(result, self.settings.rsync_timeout)}")
            return False
        logger.info("Sync completed successfully")
        return True
