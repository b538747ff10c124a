import re
import logging

from .exceptions import FilenameParseError
from .models import InstalledPackage, PackageIdentity, PerformanceSample, RepoId

logger = logging.getLogger(__name__)

# name-version-release.arch[.rpm]; version and release never contain '-'
_NVRA_RE = re.compile(r"^(?P<name>.+)-(?P<version>[^-]+)-(?P<release>[^-]+)\.(?P<arch>[^.-]+)$")

QUERY_FIELD_SEP = "|"


def parse_nvra(spec: str) -> PackageIdentity:
    """
    Parses 'name-version-release.arch' (optionally ending in '.rpm').
    This is the only place that knows the package file naming scheme.
    Raises FilenameParseError if the string does not follow it.
    """
    base = spec[:-4] if spec.endswith(".rpm") else spec
    if base.endswith(".src") or base.endswith(".nosrc"):
        raise FilenameParseError(spec, "source packages are not mirrored")
    match = _NVRA_RE.match(base)
    if not match:
        raise FilenameParseError(spec)
    return PackageIdentity(
        name=match["name"],
        epoch="0",  # File names never carry the epoch
        version=match["version"],
        release=match["release"],
        arch=match["arch"],
    )


def parse_rpm_filename(filename: str) -> PackageIdentity:
    """Parses a package file name; it must end in '.rpm'."""
    if not filename.endswith(".rpm"):
        raise FilenameParseError(filename, "not an rpm file")
    return parse_nvra(filename)


def _split_record(line: str, min_fields: int) -> list[str] | None:
    parts = [p.strip() for p in line.strip().split(QUERY_FIELD_SEP)]
    if len(parts) < min_fields:
        return None
    return parts


def _identity_from_fields(parts: list[str]) -> PackageIdentity | None:
    name, epoch, version, release, arch = parts[:5]
    if not (name and version and release and arch):
        return None
    return PackageIdentity(name, epoch, version, release, arch)


def parse_repoquery_output(content: str) -> set[PackageIdentity]:
    """
    Parses 'name|epoch|version|release|arch' lines (repoquery output and the
    on-disk cache files share this format). Malformed lines are skipped.
    """
    packages = set()
    for line in content.splitlines():
        line = line.strip()
        if not line or QUERY_FIELD_SEP not in line:
            continue  # dnf chatter such as 'Last metadata expiration check'
        parts = _split_record(line, 5)
        identity = _identity_from_fields(parts) if parts else None
        if identity is None:
            logger.debug(f"Skipping malformed query record: {line!r}")
            continue
        packages.add(identity)
    return packages


def parse_installed_output(content: str) -> list[InstalledPackage]:
    """
    Parses 'name|epoch|version|release|arch|origin' lines of the installed
    inventory. The origin's leading '@' (as shown by dnf) is dropped.
    """
    installed = []
    seen = set()
    for line in content.splitlines():
        line = line.strip()
        if not line or QUERY_FIELD_SEP not in line:
            continue
        parts = _split_record(line, 5)
        identity = _identity_from_fields(parts) if parts else None
        if identity is None:
            logger.debug(f"Skipping malformed installed record: {line!r}")
            continue
        if identity in seen:
            continue
        seen.add(identity)
        origin = parts[5].lstrip("@") if len(parts) > 5 else ""
        installed.append(InstalledPackage(identity, origin))
    return installed


def parse_repolist_output(content: str) -> list[RepoId]:
    """Parses the first column of 'dnf repolist' output, skipping the header."""
    repos = []
    for line in content.splitlines():
        fields = line.split()
        if not fields:
            continue
        if fields[0] == "repo" and len(fields) > 1 and fields[1] == "id":
            continue
        if line.startswith((" ", "Last metadata expiration check")):
            continue  # Wrapped repository names and dnf chatter
        repos.append(RepoId(fields[0]))
    return repos


def format_cache_records(packages) -> str:
    """Serializes identities into the newline-delimited cache file format."""
    lines = sorted(p.cache_record for p in packages)
    return "\n".join(lines) + ("\n" if lines else "")


def parse_performance_records(content: str) -> dict[RepoId, PerformanceSample]:
    """Parses 'repo|speed|successRate|batchSize' records."""
    samples = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(QUERY_FIELD_SEP)
        if len(parts) != 4:
            logger.debug(f"Skipping malformed performance record: {line!r}")
            continue
        try:
            sample = PerformanceSample(
                repo=RepoId(parts[0]),
                throughput=float(parts[1]),
                success_rate=float(parts[2]),
                last_batch_size=int(parts[3]),
            )
        except ValueError:
            logger.debug(f"Skipping malformed performance record: {line!r}")
            continue
        samples[sample.repo] = sample
    return samples


def format_performance_records(samples) -> str:
    lines = [
        f"{s.repo}|{s.throughput:.3f}|{s.success_rate:.3f}|{s.last_batch_size}"
        for s in sorted(samples, key=lambda s: s.repo)
    ]
    return "\n".join(lines) + ("\n" if lines else "")
