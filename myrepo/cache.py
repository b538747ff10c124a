import logging
import os
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from .config import Settings
from .dnf import needs_elevation, privileged, run_command
from .exceptions import CacheBuildError, FilenameParseError
from .models import MetadataCache, PackageIdentity, RepoId, RepositoryCacheEntry, RepositoryRegistry
from .repo_parser import format_cache_records, parse_repoquery_output, parse_rpm_filename

logger = logging.getLogger(__name__)

TIMESTAMP_FILE = "cache_timestamp"
NAMES_FILE = "cache_names"  # Package names the cached inventories were queried for
CACHE_SUFFIX = ".cache"


def scan_package_dir(package_dir: Path) -> set[PackageIdentity]:
    """Identities of all parseable package files in a directory."""
    packages = set()
    if not package_dir.is_dir():
        return packages
    for path in package_dir.glob("*.rpm"):
        try:
            packages.add(parse_rpm_filename(path.name))
        except FilenameParseError as e:
            logger.debug(f"Ignoring {path}: {e}")
    return packages


class MetadataCacheManager:
    """
    Builds or loads the per-repository package inventories.

    Inventories only cover package names installed on this host, so query cost
    follows the size of the installed set rather than the upstream catalog.
    """

    def __init__(self, settings: Settings, source, registry: RepositoryRegistry, runner=run_command):
        self.settings = settings
        self.source = source
        self.registry = registry
        self.runner = runner
        self.cache_dir = Path(settings.cache_dir)

    def cache_file(self, repo: str) -> Path:
        return self.cache_dir / f"{repo}{CACHE_SUFFIX}"

    @property
    def timestamp_file(self) -> Path:
        return self.cache_dir / TIMESTAMP_FILE

    @property
    def names_file(self) -> Path:
        return self.cache_dir / NAMES_FILE

    def _read_names(self) -> set[str] | None:
        try:
            return set(self.names_file.read_text().split())
        except OSError:
            return None

    def _read_timestamp(self) -> float | None:
        try:
            return float(self.timestamp_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def is_fresh(self, repos, ttl: float, now: float | None = None, names=None) -> bool:
        """
        True if the on-disk cache is younger than `ttl`, covers every repository
        and, when `names` is given, was queried for at least those package names.
        """
        built_at = self._read_timestamp()
        if built_at is None:
            return False
        now = time.time() if now is None else now
        if now - built_at >= ttl:
            logger.info(f"Metadata cache is {(now - built_at) / 3600:.1f}h old, refreshing")
            return False
        missing = [r for r in repos if not self.cache_file(r).is_file()]
        if missing:
            logger.info(f"Metadata cache lacks {len(missing)} repositories ({', '.join(missing[:5])}), refreshing")
            return False
        if names is not None:
            recorded = self._read_names()
            if recorded is None:
                logger.info("Metadata cache has no record of queried package names, refreshing")
                return False
            unqueried = set(names) - recorded
            if unqueried:
                logger.info(f"Metadata cache was not queried for {len(unqueried)} package names, refreshing")
                return False
        return True

    def load(self, repos) -> MetadataCache:
        built_at = self._read_timestamp() or time.time()
        cache = MetadataCache()
        for repo in repos:
            try:
                content = self.cache_file(repo).read_text()
            except OSError as e:
                logger.warning(f"Cannot read cache for {repo}: {e}")
                cache.unknown.add(repo)
                continue
            cache.entries[repo] = RepositoryCacheEntry(repo, frozenset(parse_repoquery_output(content)), built_at)
        logger.info(f"Loaded cached metadata for {len(cache.entries)} repositories")
        return cache

    def build_cache(self, installed_names, repos=None, ttl: float | None = None,
                    force_refresh: bool = False, ambiguous_names=()) -> MetadataCache:
        """
        Returns inventories for `repos` (default: every queryable repository),
        reusing the on-disk cache when it is fresh and complete.
        Raises CacheBuildError if no repository could be queried at all.
        """
        repos = sorted(self.registry.queryable() if repos is None else repos)
        ttl = self.settings.cache_ttl_seconds if ttl is None else ttl

        names = set(installed_names) | set(ambiguous_names)
        if not force_refresh and self.is_fresh(repos, ttl, names=names):
            return self.load(repos)

        logger.info(f"Building metadata cache for {len(repos)} repositories ({len(names)} package names)")
        cache = MetadataCache()
        built_at = time.time()
        results: dict[RepoId, set[PackageIdentity] | None] = {}

        remote = [r for r in repos if not self.registry.is_manual(r)]
        if remote:
            workers = max(1, min(self.settings.repoquery_parallel, len(remote)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="RepoQuery") as executor:
                futures = {executor.submit(self.source.query_repository, repo, names): repo for repo in remote}
                for future in as_completed(futures):
                    repo = futures[future]
                    try:
                        results[repo] = future.result()
                    except Exception as e:
                        logger.error(f"Inventory query for {repo} raised: {e}")
                        results[repo] = None

            if all(results[r] is None for r in remote):
                raise CacheBuildError(f"None of {len(remote)} repositories could be queried")

        for repo in repos:
            if self.registry.is_manual(repo):
                results[repo] = scan_package_dir(self.registry.package_dir(repo))

        # Single writer: only this thread touches the cache directory
        for repo in repos:
            packages = results.get(repo)
            if packages is None:
                logger.warning(f"Repository {repo} is unresolvable for this run")
                self._discard(repo)
                cache.unknown.add(repo)
                continue
            if not self.write_tiered(self.cache_file(repo), format_cache_records(packages)):
                logger.warning(f"Could not persist cache for {repo}; treating it as unknown")
                cache.unknown.add(repo)
                continue
            cache.entries[repo] = RepositoryCacheEntry(repo, frozenset(packages), built_at)
            logger.debug(f"Cached {len(packages)} packages for {repo}")

        self.write_tiered(self.names_file, "".join(f"{name}\n" for name in sorted(names)))
        self.write_tiered(self.timestamp_file, f"{int(built_at)}\n")
        self.cleanup_stale(keep=repos)
        logger.info(f"Metadata cache ready: {len(cache.entries)} repositories, {len(cache.unknown)} unknown")
        return cache

    def _discard(self, repo: str):
        path = self.cache_file(repo)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"Could not remove outdated cache file {path}: {e}")

    def write_tiered(self, path: Path, content: str) -> bool:
        """
        Persists `content`: plain write, then privileged write, then a temp
        file renamed over the target. Returns False if every tier failed.
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            return True
        except OSError as e:
            logger.debug(f"Unprivileged write to {path} failed: {e}")

        if needs_elevation(self.settings):
            timeout = self.settings.dnf_query_timeout
            mkdir = self.runner(privileged(["mkdir", "-p", str(path.parent)]), timeout)
            if mkdir is not None and mkdir.returncode == 0:
                tee = self.runner(privileged(["tee", str(path)]), timeout, input_text=content)
                if tee is not None and tee.returncode == 0:
                    return True
            logger.debug(f"Privileged write to {path} failed")

        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.replace(tmp_name, path)
            return True
        except OSError as e:
            logger.debug(f"Temp-file write to {path} failed: {e}")
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            return False

    def cleanup_stale(self, keep, now: float | None = None):
        """Removes cache files of repositories no longer requested, once old enough."""
        if not self.cache_dir.is_dir():
            return
        now = time.time() if now is None else now
        max_age = self.settings.cache_cleanup_days * 86400
        keep = set(keep)
        for path in self.cache_dir.glob(f"*{CACHE_SUFFIX}"):
            repo = path.name[:-len(CACHE_SUFFIX)]
            if repo in keep:
                continue
            try:
                if now - path.stat().st_mtime > max_age:
                    path.unlink()
                    logger.debug(f"Removed stale cache file {path}")
            except OSError as e:
                logger.debug(f"Could not clean up {path}: {e}")
