import logging
import shutil
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from .config import Settings
from .dnf import needs_elevation, privileged, run_command
from .exceptions import FilenameParseError
from .models import InstalledPackage, MirrorEntry, RepoId, RepositoryRegistry
from .repo_parser import parse_rpm_filename

logger = logging.getLogger(__name__)


def build_installed_index(installed) -> frozenset[str]:
    """
    Identity strings of every installed package, for O(1) membership tests.
    File names carry no epoch, so the index is keyed by name-version-release.arch.
    """
    return frozenset(
        (p.identity if isinstance(p, InstalledPackage) else p).nvra for p in installed
    )


def list_mirror_entries(repo: RepoId, package_dir: Path) -> list[MirrorEntry]:
    entries = []
    if not package_dir.is_dir():
        return entries
    for path in sorted(package_dir.glob("*.rpm")):
        try:
            entries.append(MirrorEntry(repo, path, parse_rpm_filename(path.name)))
        except FilenameParseError as e:
            logger.warning(f"Leaving unrecognized file in place: {e}")
    return entries


class MirrorGarbageCollector:
    """Removes mirrored files of packages that are no longer installed."""

    def __init__(self, settings: Settings, registry: RepositoryRegistry, installed_index: frozenset[str],
                 runner=run_command, keep=()):
        self.settings = settings
        self.registry = registry
        self.installed_index = installed_index
        self.runner = runner
        # Files classification matched to an installed package under another name
        self.keep = frozenset(Path(p) for p in keep)

    def candidates(self, repo: RepoId) -> list[Path]:
        """Files in `repo` whose identity is not installed and that no installed package matched."""
        entries = list_mirror_entries(repo, self.registry.package_dir(repo))
        return [e.path for e in entries if e.identity.nvra not in self.installed_index and e.path not in self.keep]

    def _delete(self, paths: list[Path]) -> list[Path]:
        """Bulk deletion of one chunk, elevating if plain unlink is refused."""
        removed, refused = [], []
        for path in paths:
            try:
                path.unlink()
                removed.append(path)
            except FileNotFoundError:
                pass
            except PermissionError:
                refused.append(path)
        if refused and needs_elevation(self.settings):
            result = self.runner(privileged(["rm", "-f", *map(str, refused)]), self.settings.dnf_query_timeout)
            if result is not None and result.returncode == 0:
                removed.extend(refused)
                refused = []
        for path in refused:
            logger.error(f"Permission denied removing {path}")
        return removed

    def sweep(self, repo: RepoId, dry_run: bool | None = None) -> list[Path]:
        """
        Removes (or in dry-run, reports) uninstalled packages from one managed
        repository. Returns the affected paths.
        """
        dry_run = self.settings.dry_run if dry_run is None else dry_run
        if self.registry.is_manual(repo):
            logger.debug(f"Skipping manual repository {repo}")
            return []

        doomed = self.candidates(repo)
        if not doomed:
            return []
        if dry_run:
            for path in doomed:
                logger.info(f"[dry-run] Would remove uninstalled {path.name} from {repo}")
            return doomed

        removed = []
        chunk = max(1, self.settings.removal_batch_size)
        for start in range(0, len(doomed), chunk):
            removed.extend(self._delete(doomed[start:start + chunk]))
        logger.info(f"Removed {len(removed)} uninstalled packages from {repo}")
        return removed

    def sweep_all(self, repos=None, dry_run: bool | None = None) -> dict[RepoId, list[Path]]:
        """Sweeps every managed repository that has a package directory on disk."""
        if repos is None:
            repos = [r for r in self.registry.managed() if self.registry.package_dir(r).is_dir()]
        repos = [r for r in repos if not self.registry.is_manual(r)]
        results: dict[RepoId, list[Path]] = {}
        if not repos:
            return results
        workers = max(1, min(self.settings.classify_parallel, len(repos)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="Cleanup") as executor:
            futures = {executor.submit(self.sweep, repo, dry_run): repo for repo in repos}
            for future in as_completed(futures):
                repo = futures[future]
                try:
                    results[repo] = future.result()
                except Exception as e:
                    logger.error(f"Cleanup of {repo} failed: {e}")
                    results[repo] = []
        return results

    def purge_excluded(self, dry_run: bool | None = None) -> list[RepoId]:
        """
        Removes whole directories of excluded repositories found under the
        repository root. Returns the repositories removed (or, in dry-run,
        that would be).
        """
        dry_run = self.settings.dry_run if dry_run is None else dry_run
        purged = []
        for repo in sorted(self.registry.excluded):
            directory = self.registry.repo_dir(repo)
            if not directory.is_dir():
                continue
            if dry_run:
                logger.info(f"[dry-run] Would remove excluded repository {directory}")
                purged.append(repo)
                continue
            try:
                shutil.rmtree(directory)
            except PermissionError:
                if not needs_elevation(self.settings):
                    logger.error(f"Permission denied removing excluded repository {directory}")
                    continue
                result = self.runner(privileged(["rm", "-rf", str(directory)]), self.settings.dnf_query_timeout)
                if result is None or result.returncode != 0:
                    logger.error(f"Could not remove excluded repository {directory}")
                    continue
            except OSError as e:
                logger.error(f"Could not remove excluded repository {directory}: {e}")
                continue
            logger.info(f"Removed excluded repository {repo}")
            purged.append(repo)
        return purged
