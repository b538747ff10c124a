import subprocess
from pathlib import Path

import pytest

from myrepo.config import Settings
from myrepo.models import InstalledPackage, PackageIdentity, RepoId, RepositoryRegistry


def ident(name, version="1.0", release="1.el9", arch="x86_64", epoch="0"):
    return PackageIdentity(name, epoch, version, release, arch)


def installed(name, version="1.0", release="1.el9", arch="x86_64", origin="baseos", epoch="0"):
    return InstalledPackage(ident(name, version, release, arch, epoch), origin)


def touch_rpm(directory: Path, filename: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.write_bytes(b"")
    return path


class FakeDnf:
    """In-memory stand-in for DnfClient that writes empty package files."""

    def __init__(self, installed=(), enabled=("baseos", "appstream"), disabled=(), offers=None):
        self.installed = list(installed)
        self.enabled = {RepoId(r) for r in enabled}
        self.disabled = {RepoId(r) for r in disabled}
        self.offers = {RepoId(r): set(p) for r, p in (offers or {}).items()}
        self.failing_repos = set()
        self.fail_specs = set()
        self.origins = {}
        self.queries = []
        self.downloads = []

    def list_installed(self):
        return list(self.installed)

    def list_repositories(self):
        return set(self.enabled), set(self.disabled)

    def query_repository(self, repo, names):
        self.queries.append(repo)
        if repo in self.failing_repos:
            return None
        return {p for p in self.offers.get(repo, set()) if p.name in set(names)}

    def installed_origin(self, identity):
        return self.origins.get(identity)

    def download(self, batch):
        self.downloads.append((batch.repo, list(batch.specs), batch.enable_repo))
        if any(spec in self.fail_specs for spec in batch.specs):
            return False, "No package available"
        for spec in batch.specs:
            touch_rpm(batch.directory, f"{spec}.rpm")
        return True, ""


class FakeRunner:
    """Records external commands and reports success unless told otherwise."""

    def __init__(self, returncode=0):
        self.returncode = returncode
        self.calls = []

    def __call__(self, cmd, timeout, input_text=None):
        self.calls.append(list(cmd))
        return subprocess.CompletedProcess(cmd, self.returncode, "", "" if self.returncode == 0 else "boom")

    def commands(self, program):
        return [c for c in self.calls if c[0] == program]


@pytest.fixture
def settings(tmp_path):
    """Settings pointing into a temp tree; no sudo, no progress bars, no waiting."""
    return Settings(
        repo_root=tmp_path / "repo",
        shared_repo_path=None,
        cache_dir=tmp_path / "cache",
        manual_repos=["manual"],
        retry_delay=0,
        elevate=False,
        debug=True,
    )


@pytest.fixture
def registry(settings):
    return RepositoryRegistry(
        repo_root=settings.repo_root,
        packages_dir=settings.packages_dir,
        enabled={RepoId("baseos"), RepoId("appstream")},
        disabled={RepoId("legacy")},
        manual={RepoId("manual")},
    )


@pytest.fixture
def runner():
    return FakeRunner()
