import logging
from pathlib import Path

from .cache import scan_package_dir
from .models import InstalledPackage, MetadataCache, PSEUDO_ORIGINS, RepoId, RepositoryRegistry

logger = logging.getLogger(__name__)


class RepositoryResolver:
    """Maps an installed package to the repository its mirror copy belongs in."""

    def __init__(self, registry: RepositoryRegistry, cache: MetadataCache, source=None, local_build=None):
        self.registry = registry
        self.cache = cache
        self.source = source
        self.local_build = local_build
        self._manual_index: dict[RepoId, set[tuple[str, str]]] | None = None

    def _manual_name_arch(self) -> dict[RepoId, set[tuple[str, str]]]:
        # Built lazily, once per run: name/arch pairs present in each manual repository
        if self._manual_index is None:
            index = {}
            for repo in sorted(self.registry.manual - self.registry.excluded):
                entry = self.cache.entries.get(repo)
                if entry is not None:
                    packages = entry.packages
                else:
                    packages = scan_package_dir(Path(self.registry.package_dir(repo)))
                index[repo] = {p.name_arch for p in packages}
            self._manual_index = index
        return self._manual_index

    def _accept(self, repo: str | None) -> RepoId | None:
        if not repo or repo in PSEUDO_ORIGINS:
            return None
        if self.registry.is_known(repo):
            return RepoId(repo)
        return None

    def resolve(self, package: InstalledPackage) -> RepoId | None:
        """
        Returns the concrete repository for `package`, or None when its
        provenance cannot be determined. Never guesses.
        """
        # (a) the origin dnf recorded names a repository we know
        if not package.is_ambiguous and not package.is_pseudo_origin:
            accepted = self._accept(package.origin)
            if accepted:
                return accepted
            logger.debug(f"{package.identity}: origin {package.origin!r} is not a known repository")

        # (a2) exact build found among packages built on this host
        if self.local_build is not None and self.registry.local_build and self.local_build.find(package.identity):
            return self.registry.local_build

        # (b) exact build offered by a cached repository
        repo = self.cache.find_repository(package.identity)
        if repo and self.registry.is_known(repo):
            return repo

        # (c) installed package introspection
        if self.source is not None and package.is_ambiguous:
            origin = self.source.installed_origin(package.identity)
            if origin and origin != package.origin:
                accepted = self._accept(origin)
                if accepted:
                    logger.debug(f"{package.identity}: origin {accepted} from installed database")
                    return accepted

        # (d) same name/arch curated in a manual repository
        for manual_repo, name_arch in self._manual_name_arch().items():
            if package.identity.name_arch in name_arch:
                return manual_repo

        # (e) unknown
        return None
