import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from tqdm import tqdm

from .config import MIN_BATCH_SIZE, Settings
from .dnf import needs_elevation, privileged, run_command
from .models import (ClassificationResult, DownloadBatch, FailureLog, PackageStatus, PerformanceSample,
                     RepoId, RepositoryRegistry)
from .repo_parser import format_performance_records, parse_performance_records

logger = logging.getLogger(__name__)

PERFORMANCE_FILE = "performance.dat"
SLOW_THROUGHPUT = 0.5   # packages per second
FAST_THROUGHPUT = 2.0
RELIABLE_RATE = 0.95
UNRELIABLE_RATE = 0.8


class BatchState(enum.Enum):
    """Granularity of a download attempt. Only a failure moves to the next state."""
    NORMAL = "normal"
    SHRUNK = "shrunk"
    INDIVIDUAL = "individual"


def next_state(state: BatchState, size: int, chunk_size: int) -> tuple[BatchState, int] | None:
    """
    Where a failed attempt of `size` specs goes next: (state, chunk size), or
    None when a single package failed and nothing smaller is left to try.
    """
    if size <= 1:
        return None
    if state is BatchState.NORMAL:
        shrunk = min(chunk_size, size // 2)
        if shrunk > 1:
            return BatchState.SHRUNK, shrunk
    return BatchState.INDIVIDUAL, 1


class ChangeBudget:
    """Global cap on packages handed to the downloader; 0 means unlimited."""

    def __init__(self, limit: int = 0):
        self.limit = limit
        self.used = 0
        self._lock = threading.Lock()

    def claim(self, wanted: int) -> int:
        """Reserves up to `wanted` packages and returns how many were granted."""
        with self._lock:
            if self.limit <= 0:
                self.used += wanted
                return wanted
            granted = max(0, min(wanted, self.limit - self.used))
            self.used += granted
            return granted


class PerformanceTracker:
    """Cross-run download statistics per repository, used for load balancing."""

    def __init__(self, path: Path | None = None, settings: Settings | None = None):
        self.path = path
        self.settings = settings or Settings()
        self._lock = threading.Lock()
        self._samples: dict[RepoId, PerformanceSample] = {}

    def load(self):
        if self.path is None:
            return
        try:
            content = self.path.read_text()
        except OSError:
            logger.debug(f"No performance history at {self.path}")
            return
        with self._lock:
            self._samples = parse_performance_records(content)
        logger.debug(f"Loaded performance history for {len(self._samples)} repositories")

    def save(self):
        if self.path is None:
            return
        with self._lock:
            content = format_performance_records(self._samples.values())
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(content)
        except OSError as e:
            logger.warning(f"Could not save performance history to {self.path}: {e}")

    def sample(self, repo: RepoId) -> PerformanceSample | None:
        with self._lock:
            return self._samples.get(repo)

    def record(self, repo: RepoId, attempted: int, succeeded: int, seconds: float, batch_size: int):
        if attempted <= 0:
            return
        throughput = succeeded / max(seconds, 0.001)
        success_rate = succeeded / attempted
        with self._lock:
            previous = self._samples.get(repo)
            if previous is not None:
                # Exponential smoothing keeps one bad batch from dominating
                throughput = (previous.throughput + throughput) / 2
                success_rate = (previous.success_rate + success_rate) / 2
            self._samples[repo] = PerformanceSample(repo, throughput, success_rate, batch_size)

    def order(self, repos) -> list[RepoId]:
        """Highest priority first; repositories without history go first to gather some."""
        def key(repo):
            sample = self.sample(repo)
            return (-(sample.priority if sample else float("inf")), repo)
        return sorted(repos, key=key)

    def batch_size_for(self, repo: RepoId, base: int) -> int:
        sample = self.sample(repo)
        if sample is None:
            return base
        if sample.success_rate < UNRELIABLE_RATE or sample.throughput < SLOW_THROUGHPUT:
            return max(MIN_BATCH_SIZE, base // 2)
        if sample.success_rate >= RELIABLE_RATE and sample.throughput >= FAST_THROUGHPUT:
            return min(self.settings.max_batch_size, int(base * 1.5))
        return base


@dataclass
class DownloadSummary:
    downloaded: dict[RepoId, int] = field(default_factory=dict)
    removed: dict[RepoId, list[Path]] = field(default_factory=dict)
    unresolved_manual: list[ClassificationResult] = field(default_factory=list)
    skipped_by_budget: int = 0

    @property
    def changed_repos(self) -> set[RepoId]:
        return {r for r, n in self.downloaded.items() if n} | {r for r, files in self.removed.items() if files}


class DownloadOrchestrator:
    """
    Fetches NEW and UPDATE packages into the mirror.

    Each repository is one task in a bounded thread pool, so no two workers
    ever write into the same package directory. Batches within a repository
    run one after another; a failed batch falls back to smaller chunks and
    then to single packages, so only packages that fail alone are recorded.
    """

    def __init__(self, settings: Settings, client, registry: RepositoryRegistry,
                 failures: FailureLog | None = None, performance: PerformanceTracker | None = None,
                 budget: ChangeBudget | None = None, runner=run_command, sources=None):
        self.settings = settings
        self.client = client
        self.registry = registry
        self.failures = failures if failures is not None else FailureLog()
        self.performance = performance if performance is not None else PerformanceTracker(settings=settings)
        self.budget = budget if budget is not None else ChangeBudget(settings.max_changed_packages)
        self.runner = runner
        # Per-repository download sources; every other repository goes through dnf
        self.sources = dict(sources or {})

    def plan(self, results) -> tuple[dict[RepoId, list[ClassificationResult]], list[ClassificationResult]]:
        """Groups NEW/UPDATE results by repository; manual repositories are never fetched into."""
        by_repo: dict[RepoId, list[ClassificationResult]] = {}
        unresolved = []
        for result in results:
            if result.status is PackageStatus.EXISTS:
                continue
            if self.registry.is_manual(result.repo):
                logger.warning(f"{result.spec} is missing from manual repository {result.repo} "
                               f"(no download attempted)")
                unresolved.append(result)
                continue
            by_repo.setdefault(result.repo, []).append(result)
        for items in by_repo.values():
            items.sort(key=lambda r: r.spec)
        return by_repo, unresolved

    def make_batches(self, repo: RepoId, items: list[ClassificationResult], batch_size: int):
        """Splits one repository's work into (DownloadBatch, results) pairs."""
        batch_size = max(1, batch_size)
        directory = self.registry.package_dir(repo)
        enable_repo = self.registry.is_disabled(repo)
        batches = []
        for start in range(0, len(items), batch_size):
            chunk = items[start:start + batch_size]
            batch = DownloadBatch(repo, directory, [r.spec for r in chunk], enable_repo=enable_repo)
            batches.append((batch, chunk))
        return batches

    def remove_stale(self, repo: RepoId, items: list[ClassificationResult]) -> list[Path]:
        """Deletes the exact files UPDATE results replace. Must run before their download."""
        stale = sorted({path for r in items if r.status is PackageStatus.UPDATE for path in r.stale_files})
        if not stale:
            return []
        if self.settings.dry_run:
            for path in stale:
                logger.info(f"[dry-run] Would remove outdated {path.name} from {repo}")
            return []
        removed = []
        leftovers = []
        for path in stale:
            try:
                path.unlink()
                removed.append(path)
            except FileNotFoundError:
                pass
            except PermissionError:
                leftovers.append(path)
        if leftovers and needs_elevation(self.settings):
            result = self.runner(privileged(["rm", "-f", *map(str, leftovers)]), self.settings.dnf_query_timeout)
            if result is not None and result.returncode == 0:
                removed.extend(leftovers)
                leftovers = []
        for path in leftovers:
            logger.error(f"Could not remove outdated {path}")
        for path in removed:
            logger.info(f"Removed outdated {path.name} from {repo}")
        return removed

    def _attempt(self, batch: DownloadBatch, specs: list[str]) -> tuple[bool, str]:
        attempt = DownloadBatch(batch.repo, batch.directory, list(specs), batch.enable_repo)
        try:
            return self.sources.get(batch.repo, self.client).download(attempt)
        except Exception as e:
            logger.error(f"Download call for {batch.repo} raised: {e}")
            return False, str(e)

    def fetch_batch(self, batch: DownloadBatch) -> list[str]:
        """
        Downloads one batch, shrinking on failure: NORMAL -> SHRUNK -> INDIVIDUAL.
        Returns the specs that were fetched; the rest are in the failure log.
        """
        succeeded = []
        work = [(BatchState.NORMAL, list(batch.specs))]
        while work:
            state, specs = work.pop(0)
            ok, reason = self._attempt(batch, specs)
            if ok:
                if state is not BatchState.NORMAL:
                    logger.info(f"Fallback batch ({len(specs)} packages, {state.value}) succeeded for {batch.repo}")
                succeeded.extend(specs)
                continue
            transition = next_state(state, len(specs), self.settings.fallback_chunk_size)
            if transition is None:
                self.failures.record(specs[0], batch.repo, reason)
                continue
            new_state, size = transition
            logger.info(f"Batch of {len(specs)} for {batch.repo} failed ({reason}); "
                        f"retrying in {new_state.value} chunks of {size}")
            work[0:0] = [(new_state, specs[i:i + size]) for i in range(0, len(specs), size)]
        if len(succeeded) != len(batch.specs):
            logger.warning(f"Fallback result for {batch.repo}: {len(succeeded)}/{len(batch.specs)} packages downloaded")
        return succeeded

    def _ensure_directory(self, directory: Path):
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # dnf creates --destdir itself; only worth a debug line
            logger.debug(f"Could not create {directory} ahead of download: {e}")

    def download_repository(self, repo: RepoId, items: list[ClassificationResult], pbar=None):
        """
        Processes all batches of one repository serially.
        Returns (downloaded count, removed files, packages skipped by the budget).
        """
        base = self.settings.batch_size
        batch_size = self.performance.batch_size_for(repo, base) if self.settings.load_balance else base
        batches = self.make_batches(repo, items, batch_size)
        if not self.settings.dry_run:
            self._ensure_directory(self.registry.package_dir(repo))

        downloaded = 0
        removed: list[Path] = []
        skipped = 0
        for index, (batch, chunk) in enumerate(batches):
            granted = self.budget.claim(len(batch))
            if granted < len(batch):
                # In-flight work finishes; nothing new is enqueued past the budget
                skipped = len(batch) - granted + sum(len(rest) for rest, _ in batches[index + 1:])
                logger.info(f"Change budget reached; {skipped} packages for {repo} not enqueued")
                batch.specs = batch.specs[:granted]
                chunk = chunk[:granted]

            if batch.specs and self.settings.dry_run:
                self.remove_stale(repo, chunk)
                logger.info(f"[dry-run] Would download {len(batch)} packages into {batch.directory}")
            elif batch.specs:
                removed.extend(self.remove_stale(repo, chunk))
                started = time.monotonic()
                fetched = self.fetch_batch(batch)
                elapsed = time.monotonic() - started
                downloaded += len(fetched)
                self.performance.record(repo, len(batch), len(fetched), elapsed, batch_size)
                logger.debug(f"Batch for {repo}: {len(fetched)}/{len(batch)} packages in {elapsed:.1f}s")
            if pbar is not None:
                pbar.update(len(batch))
            if skipped:
                break
        return downloaded, removed, skipped

    def run(self, results) -> DownloadSummary:
        by_repo, unresolved = self.plan(results)
        summary = DownloadSummary(unresolved_manual=unresolved)
        if not by_repo:
            logger.info("Nothing to download")
            return summary

        repos = self.performance.order(by_repo) if self.settings.load_balance else sorted(by_repo)
        total = sum(len(items) for items in by_repo.values())
        logger.info(f"Downloading {total} packages from {len(repos)} repositories")
        workers = max(1, min(self.settings.max_parallel_downloads, len(repos)))

        with tqdm(total=total, unit="pkg", desc="Downloading", smoothing=0.1, disable=self.settings.debug) as pbar:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="Download") as executor:
                futures = {executor.submit(self.download_repository, repo, by_repo[repo], pbar): repo for repo in repos}
                for future in as_completed(futures):
                    repo = futures[future]
                    try:
                        downloaded, removed, skipped = future.result()
                    except Exception as exc:
                        logger.exception(f"Download task for {repo} failed: {exc}")
                        for item in by_repo[repo]:
                            self.failures.record(item.spec, repo, f"download task crashed: {exc}")
                        continue
                    summary.downloaded[repo] = downloaded
                    summary.removed[repo] = removed
                    summary.skipped_by_budget += skipped

        if self.settings.load_balance:
            self.performance.save()
        return summary
