import logging
import re
from functools import cmp_to_key
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import FilenameParseError
from .models import ClassificationResult, InstalledPackage, PackageIdentity, PackageStatus, RepoId
from .repo_parser import parse_rpm_filename
from .rpm_version import compare_evr

logger = logging.getLogger(__name__)

_MODULE_TAG_RE = re.compile(r"module[+_]el")
_ZERO_MINOR_TAG_RE = re.compile(r"\.el(\d+)_0(?=$|\.)")


def normalize_release(release: str) -> str:
    """
    Canonical spelling of a release string, used to recognize the same build
    published under different distro-tag spellings ('module+el9' vs
    'module_el9', 'el9_0' vs 'el9'). An approximation, not an identity.
    """
    canonical = release.lower()
    canonical = _MODULE_TAG_RE.sub("module.el", canonical)
    canonical = _ZERO_MINOR_TAG_RE.sub(r".el\1", canonical)
    return canonical.replace("+", ".").replace("_", ".")


def releases_equivalent(release1: str, release2: str) -> bool:
    return release1 == release2 or normalize_release(release1) == normalize_release(release2)


@dataclass
class DirectoryListing:
    """Snapshot of one repository's package directory."""
    directory: Path
    filenames: set[str] = field(default_factory=set)
    by_name_arch: dict[tuple[str, str], list[tuple[PackageIdentity, Path]]] = field(default_factory=dict)

    @classmethod
    def scan(cls, directory: Path) -> "DirectoryListing":
        listing = cls(Path(directory))
        if not listing.directory.is_dir():
            return listing
        for path in sorted(listing.directory.glob("*.rpm")):
            listing.add(path)
        return listing

    def add(self, path: Path):
        self.filenames.add(path.name)
        try:
            identity = parse_rpm_filename(path.name)
        except FilenameParseError as e:
            logger.debug(f"Unparseable file in mirror: {e}")
            return
        self.by_name_arch.setdefault(identity.name_arch, []).append((identity, path))


def _vr(identity: PackageIdentity) -> tuple[str, str, str]:
    # File names carry no epoch, so only version-release can be compared
    return ("0", identity.version, identity.release)


def _compare_candidates(a, b) -> int:
    return compare_evr(_vr(a[0]), _vr(b[0]))


class PackageClassifier:
    """
    Decides whether the mirror already holds, must update, or lacks a package.

    Files of other installed builds (install-only packages such as kernels)
    are never treated as candidates: they are neither aliases nor stale.
    """

    def __init__(self, installed_index: frozenset[str] = frozenset(), force_redownload: bool = False,
                 protected_repos=()):
        self.installed_index = installed_index
        self.force_redownload = force_redownload
        self.protected_repos = frozenset(protected_repos)

    def classify_identity(self, identity: PackageIdentity,
                          listing: DirectoryListing) -> tuple[PackageStatus, list[Path], Path | None]:
        """
        Returns the status, the exact files an UPDATE replaces, and for EXISTS
        the file that satisfied the match.
        """
        # 1. exact file
        if identity.filename in listing.filenames:
            return PackageStatus.EXISTS, [], listing.directory / identity.filename

        candidates = [
            (on_disk, path) for on_disk, path in listing.by_name_arch.get(identity.name_arch, [])
            if on_disk.nvra not in self.installed_index
        ]
        if not candidates:
            # 4. nothing with this name/arch
            return PackageStatus.NEW, [], None

        # 2. same build under another release spelling
        for on_disk, path in candidates:
            if on_disk.version == identity.version and releases_equivalent(on_disk.release, identity.release):
                logger.debug(f"{identity.nvra}: treating {path.name} as the same build")
                return PackageStatus.EXISTS, [], path

        # 3. other versions present: never downgrade
        newest, newest_path = max(candidates, key=cmp_to_key(_compare_candidates))
        if compare_evr(_vr(newest), _vr(identity)) >= 0:
            logger.info(f"Mirror holds {newest_path.name}, not older than installed {identity.nvra}; keeping it")
            return PackageStatus.EXISTS, [], newest_path

        stale = [path for on_disk, path in candidates if compare_evr(_vr(on_disk), _vr(identity)) < 0]
        return PackageStatus.UPDATE, sorted(stale), None

    def classify(self, package: InstalledPackage, repo: RepoId, repo_package_dir: Path,
                 listing: DirectoryListing | None = None) -> ClassificationResult:
        if listing is None:
            listing = DirectoryListing.scan(repo_package_dir)
        identity = package.identity
        status, stale, matched = self.classify_identity(identity, listing)
        if self._forced(status, repo, identity, matched):
            logger.debug(f"{identity.nvra}: forced re-download replaces {matched.name}")
            return ClassificationResult(package, PackageStatus.UPDATE, repo, Path(repo_package_dir), [matched])
        return ClassificationResult(package, status, repo, Path(repo_package_dir), stale, matched)

    def _forced(self, status: PackageStatus, repo: RepoId, identity: PackageIdentity, matched: Path | None) -> bool:
        """Forced re-download covers the same build only; a newer file on disk is never replaced."""
        if status is not PackageStatus.EXISTS or not self.force_redownload or matched is None:
            return False
        if repo in self.protected_repos:
            return False
        if matched.name == identity.filename:
            return True
        try:
            on_disk = parse_rpm_filename(matched.name)
        except FilenameParseError:
            return False
        return on_disk.version == identity.version and releases_equivalent(on_disk.release, identity.release)

    def classify_repository(self, repo: RepoId, repo_package_dir: Path, packages) -> list[ClassificationResult]:
        """Classifies all packages of one repository against a single listing snapshot."""
        listing = DirectoryListing.scan(repo_package_dir)
        return [self.classify(package, repo, repo_package_dir, listing) for package in packages]
