import argparse
import logging
import sys
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from pathlib import Path

from tqdm import tqdm

# Project internal imports
from . import config
from .cache import MetadataCacheManager
from .classifier import PackageClassifier
from .cleanup import MirrorGarbageCollector, build_installed_index
from .dnf import DnfClient, run_command
from .downloader import PERFORMANCE_FILE, ChangeBudget, DownloadOrchestrator, PerformanceTracker
from .exceptions import MyrepoError
from .local_build import LOCAL_BUILD_REPO, LocalBuildSource
from .metadata import MetadataSyncCoordinator
from .models import (ClassificationResult, FailureLog, InstalledPackage, PackageStatus, RepoId,
                     RepositoryRegistry, RunReport)
from .resolver import RepositoryResolver

# --- Logging Setup ---
# Place basicConfig here so logger instances in other modules inherit it
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(threadName)s] %(message)s')
logger = logging.getLogger(__name__) # Get logger for this module


def build_registry(settings: config.Settings, enabled, disabled) -> RepositoryRegistry:
    return RepositoryRegistry(
        repo_root=Path(settings.repo_root),
        packages_dir=settings.packages_dir,
        enabled={RepoId(r) for r in enabled},
        disabled={RepoId(r) for r in disabled},
        manual={RepoId(r) for r in settings.manual_repos},
        excluded={RepoId(r) for r in settings.excluded_repos},
        local_build=LOCAL_BUILD_REPO if settings.rpmbuild_path else None,
    )


def select_packages(installed: list[InstalledPackage], settings: config.Settings) -> list[InstalledPackage]:
    """Applies the name filter and the package budget."""
    pattern = settings.package_filter()
    selected = [p for p in installed if pattern is None or pattern.search(p.name)]
    selected.sort(key=lambda p: (p.name, p.identity.arch))
    if settings.max_packages > 0 and len(selected) > settings.max_packages:
        logger.info(f"Processing only the first {settings.max_packages} of {len(selected)} packages")
        selected = selected[:settings.max_packages]
    return selected


def resolve_packages(resolver: RepositoryResolver, registry: RepositoryRegistry, packages,
                     report: RunReport) -> dict[RepoId, list[InstalledPackage]]:
    by_repo: dict[RepoId, list[InstalledPackage]] = {}
    for package in packages:
        if package.origin in registry.excluded:
            logger.debug(f"Skipping {package.identity} from excluded repository {package.origin}")
            continue
        repo = resolver.resolve(package)
        if repo is None:
            logger.warning(f"Cannot determine source repository of {package.identity} "
                           f"(origin {package.origin or 'unknown'}); not mirrored")
            report.unknown_provenance.append(package)
            continue
        by_repo.setdefault(repo, []).append(package)
    return by_repo


def classify_packages(classifier: PackageClassifier, registry: RepositoryRegistry,
                      by_repo: dict[RepoId, list[InstalledPackage]], settings: config.Settings,
                      report: RunReport) -> list[ClassificationResult]:
    """Classifies every repository's packages in a bounded pool, one task per repository."""
    results: list[ClassificationResult] = []
    if not by_repo:
        return results
    total = sum(len(p) for p in by_repo.values())
    workers = max(1, min(settings.classify_parallel, len(by_repo)))
    with tqdm(total=total, unit="pkg", desc="Classifying", smoothing=0.1, disable=settings.debug) as pbar:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="Classify") as executor:
            futures = {
                executor.submit(classifier.classify_repository, repo, registry.package_dir(repo), packages): repo
                for repo, packages in by_repo.items()
            }
            for future in as_completed(futures):
                repo = futures[future]
                try:
                    repo_results = future.result()
                except Exception as exc:
                    logger.error(f"Classification of {repo} failed: {exc}")
                    logger.error(traceback.format_exc())
                    continue
                pbar.update(len(repo_results))
                results.extend(repo_results)

    results.sort(key=lambda r: (r.repo, r.spec))
    for result in results:
        report.status_counts[result.status] += 1
        if result.status is PackageStatus.EXISTS:
            logger.debug(f"{result.repo}: {result.spec} exists")
        else:
            logger.info(f"{result.repo}: {result.spec} is {result.status.value}")
    return results


def clear_managed_repositories(registry: RepositoryRegistry, settings: config.Settings):
    """Full rebuild: empties every managed package directory before classification."""
    for repo in registry.managed():
        package_dir = registry.package_dir(repo)
        if not package_dir.is_dir():
            continue
        for path in package_dir.glob("*.rpm"):
            if settings.dry_run:
                logger.info(f"[dry-run] Would remove {path} for full rebuild")
                continue
            try:
                path.unlink()
            except OSError as e:
                logger.error(f"Could not remove {path} for full rebuild: {e}")


def synchronize(settings: config.Settings, client=None, runner=run_command) -> RunReport:
    """
    Runs one synchronization pass and returns its report.
    Raises MyrepoError subclasses only for conditions that make the run pointless.
    """
    client = client or DnfClient(settings, runner=runner)
    report = RunReport()

    logger.info("Fetching list of installed packages...")
    installed = client.list_installed()
    logger.info("Fetching repository lists...")
    enabled, disabled = client.list_repositories()
    registry = build_registry(settings, enabled, disabled)
    installed_index = build_installed_index(installed)
    local_build = LocalBuildSource(settings.rpmbuild_path) if settings.rpmbuild_path else None
    collector = MirrorGarbageCollector(settings, registry, installed_index, runner=runner)
    report.purged_repos = collector.purge_excluded()

    if settings.full_rebuild:
        logger.info("Full rebuild requested: clearing managed repositories")
        clear_managed_repositories(registry, settings)

    selected = select_packages(installed, settings)
    ambiguous_names = {p.name for p in installed if p.is_ambiguous}
    cache_manager = MetadataCacheManager(settings, client, registry, runner=runner)
    cache = cache_manager.build_cache(
        {p.name for p in selected}, registry.queryable(), settings.cache_ttl_seconds,
        settings.force_refresh, ambiguous_names=ambiguous_names,
    )

    resolver = RepositoryResolver(registry, cache, client, local_build=local_build)
    by_repo = resolve_packages(resolver, registry, selected, report)
    classifier = PackageClassifier(installed_index, force_redownload=settings.force_redownload,
                                   protected_repos=registry.manual)
    results = classify_packages(classifier, registry, by_repo, settings, report)

    failures = FailureLog()
    performance = PerformanceTracker(Path(settings.cache_dir) / PERFORMANCE_FILE, settings)
    if settings.load_balance:
        performance.load()
    orchestrator = DownloadOrchestrator(settings, client, registry, failures, performance,
                                        ChangeBudget(settings.max_changed_packages), runner=runner,
                                        sources={registry.local_build: local_build} if local_build else None)
    summary = orchestrator.run(results)
    report.downloaded = summary.downloaded
    report.unresolved_manual = summary.unresolved_manual
    report.failures = failures.records
    report.changed_repos = set(summary.changed_repos)
    report.skipped_by_budget = summary.skipped_by_budget

    if not settings.cleanup_uninstalled:
        logger.info("Cleanup of uninstalled packages disabled")
    elif settings.name_filter or settings.max_packages > 0:
        # Unclassified packages have no matched files to protect
        logger.info("Skipping cleanup of uninstalled packages for a partial run")
    else:
        collector.keep = frozenset(r.matched_file for r in results if r.matched_file is not None)
        for repo, removed in collector.sweep_all().items():
            report.removed_files.extend(removed)
            if removed and not settings.dry_run:
                report.changed_repos.add(repo)

    coordinator = MetadataSyncCoordinator(settings, registry, runner=runner)
    if settings.update_metadata:
        report.regenerated, report.regeneration_failures = coordinator.regenerate_changed(report.changed_repos)
    else:
        logger.info("Metadata update disabled")

    if not settings.sync_shared:
        logger.info("Shared repository sync disabled")
    elif settings.max_packages > 0:
        logger.info("Skipping shared repository sync due to max-packages setting")
    else:
        report.sync_ok = coordinator.replicate()
    return report


def log_summary(report: RunReport, settings: config.Settings):
    counts = report.status_counts
    logger.info("--- Synchronization Summary ---")
    logger.info(f"Exists: {counts[PackageStatus.EXISTS]}  New: {counts[PackageStatus.NEW]}  "
                f"Update: {counts[PackageStatus.UPDATE]}")
    logger.info(f"Downloaded: {sum(report.downloaded.values())} packages into {len(report.downloaded)} repositories")
    removed_label = "Would remove" if settings.dry_run else "Removed"
    logger.info(f"{removed_label} {len(report.removed_files)} uninstalled package files")
    if report.purged_repos:
        purged_label = "Would remove" if settings.dry_run else "Removed"
        logger.info(f"{purged_label} excluded repositories: {', '.join(report.purged_repos)}")
    if report.skipped_by_budget:
        logger.warning(f"Change budget reached: {report.skipped_by_budget} packages not downloaded")
    if report.regenerated:
        logger.info(f"Metadata regenerated: {', '.join(report.regenerated)}")
    if report.unknown_provenance:
        logger.warning(f"{len(report.unknown_provenance)} packages with unknown source repository:")
        for package in report.unknown_provenance:
            logger.warning(f"   {package.identity} (origin {package.origin or 'unknown'})")
    if report.unresolved_manual:
        logger.warning(f"{len(report.unresolved_manual)} packages missing from manual repositories:")
        for result in report.unresolved_manual:
            logger.warning(f"   {result.repo}: {result.spec}")
    if report.failures:
        logger.warning(f"{len(report.failures)} packages failed to download:")
        for failure in report.failures:
            logger.warning(f"   {failure.repo}: {failure.spec} ({failure.reason})")
    if report.regeneration_failures:
        logger.warning(f"Metadata update failed for: {', '.join(report.regeneration_failures)}")
    if report.sync_ok is False:
        logger.warning("Shared repository sync failed")
    logger.info("-------------------------------")


def run_sync_process(settings: config.Settings, client=None, runner=run_command) -> int:
    """Runs the synchronization and returns a process exit status."""
    logger.info(f"Starting mirror synchronization (version {config.VERSION}).")
    logger.info(f"Repository root: {settings.repo_root}")
    logger.info(f"Shared path: {settings.shared_repo_path}")
    logger.info(f"Manual repositories: {', '.join(settings.manual_repos) or '-'}")
    logger.info(f"Dry run: {settings.dry_run}")

    report = synchronize(settings, client=client, runner=runner)
    log_summary(report, settings)
    if report.has_errors:
        logger.warning("Synchronization finished with errors. The mirror might be incomplete.")
        return 1
    logger.info("Synchronization finished successfully.")
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Keep a reduced local RPM mirror in step with the packages installed on this host.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter # Show defaults in help
    )
    parser.add_argument("--config", default=config.DEFAULT_CONFIG_FILE, help="KEY=VALUE configuration file.")
    parser.add_argument("--repo-root", help="Local mirror root.")
    parser.add_argument("--shared-path", help="Shared location the mirror is replicated to.")
    parser.add_argument("--cache-dir", help="Directory for metadata cache and performance history.")
    parser.add_argument("--rpmbuild-path", help="Tree of locally built packages to mirror as repository rpmbuild.")
    parser.add_argument("--manual-repos", help="Comma-separated manually curated repositories.")
    parser.add_argument("--exclude-repos", help="Comma-separated repositories to ignore.")
    parser.add_argument("--name-filter", help="Only process packages whose name matches this regex.")
    parser.add_argument("--batch-size", type=int, help="Packages per download call.")
    parser.add_argument("--parallel", type=int, help="Concurrent repository downloads.")
    parser.add_argument("--max-packages", type=int, help="Stop after this many installed packages (0 = all).")
    parser.add_argument("--max-changed-packages", type=int, help="Stop enqueuing downloads after this many (0 = all).")
    parser.add_argument("--cache-max-age", type=float, help="Metadata cache TTL in hours.")
    parser.add_argument("--force-refresh", action="store_true", default=None, help="Rebuild the metadata cache.")
    parser.add_argument("--force-redownload", action="store_true", default=None,
                        help="Remove and fetch again packages the mirror already holds.")
    parser.add_argument("--full-rebuild", action="store_true", default=None, help="Empty managed repositories first.")
    parser.add_argument("--dry-run", action="store_true", default=None, help="Report changes without making them.")
    parser.add_argument("--load-balance", action="store_true", default=None, help="Order and size downloads by history.")
    parser.add_argument("--no-cleanup", action="store_true", help="Keep files of uninstalled packages.")
    parser.add_argument("--no-metadata-update", action="store_true", help="Skip createrepo.")
    parser.add_argument("--no-sync", action="store_true", help="Skip replication to the shared path.")
    parser.add_argument("--user-mode", action="store_true", help="Never use sudo.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging (very verbose).")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level when --debug is not given.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {config.VERSION}")
    return parser.parse_args(argv)


def build_settings(args) -> config.Settings:
    """Defaults, then the config file, then command line flags."""
    overrides = config.load_config_file(Path(args.config))
    cli = {
        "repo_root": Path(args.repo_root) if args.repo_root else None,
        "shared_repo_path": Path(args.shared_path) if args.shared_path else None,
        "cache_dir": Path(args.cache_dir) if args.cache_dir else None,
        "rpmbuild_path": Path(args.rpmbuild_path) if args.rpmbuild_path else None,
        "manual_repos": [r for r in args.manual_repos.split(",") if r] if args.manual_repos is not None else None,
        "excluded_repos": [r for r in args.exclude_repos.split(",") if r] if args.exclude_repos is not None else None,
        "name_filter": args.name_filter,
        "batch_size": args.batch_size,
        "max_parallel_downloads": args.parallel,
        "max_packages": args.max_packages,
        "max_changed_packages": args.max_changed_packages,
        "cache_max_age_hours": args.cache_max_age,
        "force_refresh": args.force_refresh,
        "force_redownload": args.force_redownload,
        "full_rebuild": args.full_rebuild,
        "dry_run": args.dry_run,
        "load_balance": args.load_balance,
    }
    overrides.update({k: v for k, v in cli.items() if v is not None})
    if args.no_cleanup:
        overrides["cleanup_uninstalled"] = False
    if args.no_metadata_update:
        overrides["update_metadata"] = False
    if args.no_sync:
        overrides["sync_shared"] = False
    if args.user_mode:
        overrides["elevate"] = False
    overrides["debug"] = args.debug
    return replace(config.Settings(), **overrides)


def main(argv=None):
    """Parses arguments and starts the synchronization."""
    args = parse_args(argv)

    # Adjust logging level based on debug flag
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug logging enabled.")
    else:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        settings = build_settings(args)
        return run_sync_process(settings)
    except MyrepoError as e:
        logger.error(f"Synchronization aborted: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Process interrupted by user.")
        return 1
    except Exception as e:
        logger.error(f"An unexpected critical error occurred: {e}")
        logger.error(traceback.format_exc())
        return 1

# Note: This file is intended to be imported by run_myrepo.py,
# but can be run directly if needed (though run_myrepo.py is cleaner)
if __name__ == "__main__":
     sys.exit(main())
