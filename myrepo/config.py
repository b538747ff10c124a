import datetime
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

VERSION = "3.0.0"

# Layout of the local mirror: <repo root>/<repo>/<packages dir>/*.rpm
DEFAULT_REPO_ROOT = "/repo"
DEFAULT_SHARED_REPO_PATH = "/mnt/hgfs/ForVMware/ol9_repos"
DEFAULT_PACKAGES_DIR = "getPackage"
DEFAULT_CACHE_DIR = "/var/cache/myrepo"
DEFAULT_CONFIG_FILE = "myrepo.cfg"

DEFAULT_MANUAL_REPOS = ["ol9_edge", "pgdg-common", "pgdg16"]
DEFAULT_EXCLUDED_REPOS: list[str] = []
DEFAULT_ARCHITECTURES = ["x86_64", "noarch"]

CACHE_MAX_AGE_HOURS = 1.0
CACHE_MAX_AGE_HOURS_NIGHT = 4.0
NIGHT_START_HOUR = 22   # Night window wraps midnight: 22:00 - 06:00
NIGHT_END_HOUR = 6
CACHE_CLEANUP_DAYS = 7

BATCH_SIZE = 50          # Packages per dnf download call
FALLBACK_CHUNK_SIZE = 5  # Chunk size after a batch failed
MIN_BATCH_SIZE = 5
MAX_BATCH_SIZE = 100
REPOQUERY_CHUNK_SIZE = 400  # Package names per repoquery command line
REMOVAL_BATCH_SIZE = 50

REPOQUERY_PARALLEL = 4
CLASSIFY_PARALLEL = 4
MAX_PARALLEL_DOWNLOADS = 4

MAX_RETRIES = 3
RETRY_DELAY = 5            # seconds
DNF_QUERY_TIMEOUT = 120    # seconds
DNF_DOWNLOAD_TIMEOUT = 1800
CREATEREPO_TIMEOUT = 1800
RSYNC_TIMEOUT = 3600

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
# Settings whose default is None but hold a path when set
_OPTIONAL_PATHS = {"rpmbuild_path"}


@dataclass
class Settings:
    """Effective configuration of one synchronization run."""
    repo_root: Path = Path(DEFAULT_REPO_ROOT)
    shared_repo_path: Path | None = Path(DEFAULT_SHARED_REPO_PATH)
    packages_dir: str = DEFAULT_PACKAGES_DIR
    cache_dir: Path = Path(DEFAULT_CACHE_DIR)
    manual_repos: list[str] = field(default_factory=lambda: list(DEFAULT_MANUAL_REPOS))
    excluded_repos: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_REPOS))
    architectures: list[str] = field(default_factory=lambda: list(DEFAULT_ARCHITECTURES))
    cache_max_age_hours: float = CACHE_MAX_AGE_HOURS
    cache_max_age_hours_night: float = CACHE_MAX_AGE_HOURS_NIGHT
    night_start_hour: int = NIGHT_START_HOUR
    night_end_hour: int = NIGHT_END_HOUR
    cache_cleanup_days: int = CACHE_CLEANUP_DAYS
    batch_size: int = BATCH_SIZE
    fallback_chunk_size: int = FALLBACK_CHUNK_SIZE
    max_batch_size: int = MAX_BATCH_SIZE
    repoquery_chunk_size: int = REPOQUERY_CHUNK_SIZE
    removal_batch_size: int = REMOVAL_BATCH_SIZE
    repoquery_parallel: int = REPOQUERY_PARALLEL
    classify_parallel: int = CLASSIFY_PARALLEL
    max_parallel_downloads: int = MAX_PARALLEL_DOWNLOADS
    max_retries: int = MAX_RETRIES
    retry_delay: float = RETRY_DELAY
    dnf_query_timeout: int = DNF_QUERY_TIMEOUT
    dnf_download_timeout: int = DNF_DOWNLOAD_TIMEOUT
    createrepo_timeout: int = CREATEREPO_TIMEOUT
    rsync_timeout: int = RSYNC_TIMEOUT
    max_packages: int = 0           # 0 = no limit
    max_changed_packages: int = 0   # 0 = no limit
    name_filter: str = ""
    rpmbuild_path: Path | None = None  # Locally built packages, mirrored as repository "rpmbuild"
    dry_run: bool = False
    force_refresh: bool = False
    force_redownload: bool = False
    full_rebuild: bool = False
    cleanup_uninstalled: bool = True
    update_metadata: bool = True
    sync_shared: bool = True
    load_balance: bool = False
    elevate: bool = True
    debug: bool = False

    def is_night(self, hour: int) -> bool:
        start, end = self.night_start_hour, self.night_end_hour
        if start <= end:
            return start <= hour < end
        return hour >= start or hour < end

    def cache_ttl_at(self, hour: int) -> float:
        """Cache TTL in seconds for a given hour of the day; nights tolerate older metadata."""
        hours = self.cache_max_age_hours_night if self.is_night(hour) else self.cache_max_age_hours
        return hours * 3600

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_at(datetime.datetime.now().hour)

    def package_filter(self):
        """Compiled name filter, or None when every package is processed."""
        if not self.name_filter:
            return None
        try:
            return re.compile(self.name_filter)
        except re.error as e:
            raise ConfigError(f"Invalid name filter {self.name_filter!r}: {e}") from e


_DEFAULTS = Settings()

# Keys of the shell-style config file mapped onto Settings attributes
CONFIG_FILE_KEYS = {
    "LOCAL_REPO_PATH": "repo_root",
    "SHARED_REPO_PATH": "shared_repo_path",
    "PACKAGES_DIR": "packages_dir",
    "CACHE_DIR": "cache_dir",
    "MANUAL_REPOS": "manual_repos",
    "LOCAL_REPOS": "manual_repos",
    "EXCLUDED_REPOS": "excluded_repos",
    "ARCHITECTURES": "architectures",
    "CACHE_MAX_AGE_HOURS": "cache_max_age_hours",
    "CACHE_MAX_AGE_HOURS_NIGHT": "cache_max_age_hours_night",
    "NIGHT_START_HOUR": "night_start_hour",
    "NIGHT_END_HOUR": "night_end_hour",
    "CACHE_CLEANUP_DAYS": "cache_cleanup_days",
    "BATCH_SIZE": "batch_size",
    "FALLBACK_CHUNK_SIZE": "fallback_chunk_size",
    "MAX_BATCH_SIZE": "max_batch_size",
    "XARGS_BATCH_SIZE": "removal_batch_size",
    "REPOQUERY_PARALLEL": "repoquery_parallel",
    "PARALLEL": "classify_parallel",
    "MAX_PARALLEL_DOWNLOADS": "max_parallel_downloads",
    "DNF_QUERY_TIMEOUT": "dnf_query_timeout",
    "DNF_DOWNLOAD_TIMEOUT": "dnf_download_timeout",
    "MAX_PACKAGES": "max_packages",
    "MAX_CHANGED_PACKAGES": "max_changed_packages",
    "NAME_FILTER": "name_filter",
    "RPMBUILD_PATH": "rpmbuild_path",
    "DRY_RUN": "dry_run",
    "FULL_REBUILD": "full_rebuild",
    "FORCE_REDOWNLOAD": "force_redownload",
    "CLEANUP_UNINSTALLED": "cleanup_uninstalled",
    "LOAD_BALANCE": "load_balance",
}


def _convert(attr: str, raw: str):
    """Converts a raw config string to the type of the Settings attribute."""
    default = getattr(_DEFAULTS, attr)
    try:
        if isinstance(default, list):
            return [item.strip() for item in raw.split(",") if item.strip()]
        if isinstance(default, Path) or attr in _OPTIONAL_PATHS:
            return Path(raw) if raw else None
        if isinstance(default, bool):
            return raw.lower() in _TRUE_VALUES
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid value {raw!r} for {attr}: {e}") from e
    return raw


def load_config_file(path: Path) -> dict:
    """
    Reads a KEY=VALUE config file (shell style, '#' comments, optional quotes).
    Returns a dict of Settings attribute overrides.
    """
    overrides = {}
    try:
        lines = Path(path).read_text().splitlines()
    except FileNotFoundError:
        logger.debug(f"Config file not found, using defaults: {path}")
        return overrides

    for lineno, line in enumerate(lines, start=1):
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        if "=" not in line:
            logger.warning(f"{path}:{lineno}: ignoring malformed line")
            continue
        key, raw = (part.strip() for part in line.split("=", 1))
        raw = raw.strip("\"'")
        attr = CONFIG_FILE_KEYS.get(key)
        if attr is None:
            logger.warning(f"{path}:{lineno}: unknown config key {key}")
            continue
        overrides[attr] = _convert(attr, raw)
    logger.debug(f"Loaded {len(overrides)} settings from {path}")
    return overrides
