import enum
import functools
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import NewType

from .rpm_version import compare_evr

logger = logging.getLogger(__name__)

RepoId = NewType("RepoId", str)

# Origins reported for packages whose source repository is not recorded
AMBIGUOUS_ORIGINS = frozenset({"", "System", "<unknown>", "anaconda", "installed"})
# Origins that never correspond to a repository (e.g. 'dnf install ./foo.rpm')
PSEUDO_ORIGINS = frozenset({"commandline"})


@functools.total_ordering
@dataclass(frozen=True)
class PackageIdentity:
    """Uniquely identifies one package build."""
    name: str
    epoch: str
    version: str
    release: str
    arch: str

    def __post_init__(self):
        if self.epoch in ("", "(none)"):
            object.__setattr__(self, "epoch", "0")

    @property
    def evr(self) -> tuple[str, str, str]:
        return (self.epoch, self.version, self.release)

    @property
    def nvra(self) -> str:
        return f"{self.name}-{self.version}-{self.release}.{self.arch}"

    @property
    def filename(self) -> str:
        return f"{self.nvra}.rpm"

    @property
    def name_arch(self) -> tuple[str, str]:
        return (self.name, self.arch)

    @property
    def cache_record(self) -> str:
        return f"{self.name}|{self.epoch}|{self.version}|{self.release}|{self.arch}"

    def __lt__(self, other):
        if not isinstance(other, PackageIdentity):
            return NotImplemented
        if self.name_arch != other.name_arch:
            return self.name_arch < other.name_arch
        return compare_evr(self.evr, other.evr) < 0

    def __str__(self):
        if self.epoch != "0":
            return f"{self.name}-{self.epoch}:{self.version}-{self.release}.{self.arch}"
        return self.nvra


@dataclass(frozen=True)
class InstalledPackage:
    """A package installed on the reference host, with the origin dnf reports."""
    identity: PackageIdentity
    origin: str = ""

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def is_ambiguous(self) -> bool:
        return self.origin in AMBIGUOUS_ORIGINS

    @property
    def is_pseudo_origin(self) -> bool:
        return self.origin in PSEUDO_ORIGINS


@dataclass
class RepositoryCacheEntry:
    """Packages one repository offers upstream, restricted to installed names."""
    repo: RepoId
    packages: frozenset[PackageIdentity]
    built_at: float = field(default_factory=time.time)

    def is_fresh(self, ttl: float, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return (now - self.built_at) < ttl

    def __contains__(self, identity: PackageIdentity) -> bool:
        return identity in self.packages


@dataclass
class MetadataCache:
    """
    All repository inventories of one run. Repositories in `unknown` could not
    be queried or persisted: they are unresolvable, which is not the same as
    offering no packages.
    """
    entries: dict[RepoId, RepositoryCacheEntry] = field(default_factory=dict)
    unknown: set[RepoId] = field(default_factory=set)

    def find_repository(self, identity: PackageIdentity) -> RepoId | None:
        for repo in sorted(self.entries):
            if identity in self.entries[repo]:
                return repo
        return None

    def is_known(self, repo: RepoId) -> bool:
        return repo in self.entries


@dataclass(frozen=True)
class MirrorEntry:
    """One package file inside a repository's package directory."""
    repo: RepoId
    path: Path
    identity: PackageIdentity


class PackageStatus(enum.Enum):
    EXISTS = "EXISTS"
    UPDATE = "UPDATE"
    NEW = "NEW"


@dataclass
class ClassificationResult:
    package: InstalledPackage
    status: PackageStatus
    repo: RepoId
    directory: Path
    stale_files: list[Path] = field(default_factory=list)
    matched_file: Path | None = None  # File that satisfied an EXISTS match

    @property
    def spec(self) -> str:
        return self.package.identity.nvra


@dataclass
class DownloadBatch:
    repo: RepoId
    directory: Path
    specs: list[str]
    enable_repo: bool = False  # Re-enable a disabled repository for this call only

    def __len__(self):
        return len(self.specs)


@dataclass(frozen=True)
class FailureRecord:
    spec: str
    repo: RepoId
    reason: str


@dataclass
class PerformanceSample:
    repo: RepoId
    throughput: float       # packages per second
    success_rate: float     # 0.0 - 1.0
    last_batch_size: int

    @property
    def priority(self) -> float:
        return self.throughput * self.success_rate


class FailureLog:
    """Thread-safe accumulator of FailureRecords for one run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: list[FailureRecord] = []

    def record(self, spec: str, repo: RepoId, reason: str):
        with self._lock:
            self._records.append(FailureRecord(spec, repo, reason))
        logger.warning(f"Download failed for {spec} from {repo}: {reason}")

    @property
    def records(self) -> list[FailureRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self):
        with self._lock:
            return len(self._records)


@dataclass
class RepositoryRegistry:
    """Typed view of which repositories exist and how each one is treated."""
    repo_root: Path
    packages_dir: str
    enabled: set[RepoId] = field(default_factory=set)
    disabled: set[RepoId] = field(default_factory=set)
    manual: set[RepoId] = field(default_factory=set)
    excluded: set[RepoId] = field(default_factory=set)
    local_build: RepoId | None = None  # Repository fed from locally built packages

    def is_known(self, repo: str) -> bool:
        if repo in self.excluded:
            return False
        return repo in self.enabled or repo in self.disabled or repo in self.manual or repo == self.local_build

    def is_enabled(self, repo: str) -> bool:
        return repo in self.enabled and repo not in self.excluded

    def is_disabled(self, repo: str) -> bool:
        return repo in self.disabled

    def is_manual(self, repo: str) -> bool:
        return repo in self.manual

    def is_managed(self, repo: str) -> bool:
        return self.is_known(repo) and not self.is_manual(repo)

    def queryable(self) -> list[RepoId]:
        """Repositories whose inventory is cached: enabled ones plus manual ones."""
        return sorted((self.enabled | self.manual) - self.excluded)

    def managed(self) -> list[RepoId]:
        repos = self.enabled | self.disabled | ({self.local_build} if self.local_build else set())
        return sorted(r for r in repos if self.is_managed(r))

    def repo_dir(self, repo: str) -> Path:
        return self.repo_root / repo

    def package_dir(self, repo: str) -> Path:
        return self.repo_root / repo / self.packages_dir


@dataclass
class RunReport:
    """Everything a run did or could not do, summarized at the end."""
    status_counts: dict[PackageStatus, int] = field(default_factory=lambda: {s: 0 for s in PackageStatus})
    unknown_provenance: list[InstalledPackage] = field(default_factory=list)
    unresolved_manual: list[ClassificationResult] = field(default_factory=list)
    downloaded: dict[RepoId, int] = field(default_factory=dict)
    failures: list[FailureRecord] = field(default_factory=list)
    removed_files: list[Path] = field(default_factory=list)
    purged_repos: list[RepoId] = field(default_factory=list)
    skipped_by_budget: int = 0
    changed_repos: set[RepoId] = field(default_factory=set)
    regenerated: list[RepoId] = field(default_factory=list)
    regeneration_failures: list[RepoId] = field(default_factory=list)
    sync_ok: bool | None = None

    @property
    def has_errors(self) -> bool:
        return bool(self.failures or self.regeneration_failures or self.sync_ok is False)
