import pytest

from myrepo.local_build import LocalBuildSource
from myrepo.models import DownloadBatch, InstalledPackage, MetadataCache, RepoId
from myrepo.resolver import RepositoryResolver
from conftest import ident, touch_rpm


@pytest.fixture
def rpms(tmp_path):
    """An rpmbuild RPMS tree with one package per architecture directory."""
    root = tmp_path / "rpmbuild" / "RPMS"
    touch_rpm(root / "x86_64", "mytool-1.2-3.el9.x86_64.rpm")
    touch_rpm(root / "noarch", "mytool-docs-1.2-3.el9.noarch.rpm")
    touch_rpm(root / "x86_64", "notes.rpm")
    return root


def test_index_covers_all_architecture_directories(rpms):
    source = LocalBuildSource(rpms)
    assert sorted(source.index) == ["mytool-1.2-3.el9.x86_64", "mytool-docs-1.2-3.el9.noarch"]
    assert source.find(ident("mytool", "1.2", "3.el9")) == rpms / "x86_64" / "mytool-1.2-3.el9.x86_64.rpm"
    assert source.find(ident("mytool", "1.2", "4.el9")) is None


def test_missing_root_is_empty(tmp_path, caplog):
    assert LocalBuildSource(tmp_path / "absent").index == {}
    assert "does not exist" in caplog.text


def test_download_copies_into_mirror(rpms, tmp_path):
    target = tmp_path / "repo" / "rpmbuild" / "getPackage"
    batch = DownloadBatch(RepoId("rpmbuild"), target, ["mytool-1.2-3.el9.x86_64", "mytool-docs-1.2-3.el9.noarch"])
    assert LocalBuildSource(rpms).download(batch) == (True, "")
    assert sorted(p.name for p in target.iterdir()) == [
        "mytool-1.2-3.el9.x86_64.rpm", "mytool-docs-1.2-3.el9.noarch.rpm",
    ]


def test_download_reports_missing_builds(rpms, tmp_path):
    batch = DownloadBatch(RepoId("rpmbuild"), tmp_path / "out", ["mytool-9.9-1.el9.x86_64"])
    ok, reason = LocalBuildSource(rpms).download(batch)
    assert not ok
    assert "mytool-9.9-1.el9.x86_64" in reason
    assert not (tmp_path / "out").exists()


def test_resolver_prefers_local_build_over_repository_cache(registry, rpms):
    registry.local_build = RepoId("rpmbuild")
    resolver = RepositoryResolver(registry, MetadataCache(), local_build=LocalBuildSource(rpms))
    assert resolver.resolve(InstalledPackage(ident("mytool", "1.2", "3.el9"), "commandline")) == "rpmbuild"
    assert resolver.resolve(InstalledPackage(ident("mytool", "1.2", "3.el9"), "baseos")) == "baseos"
    assert resolver.resolve(InstalledPackage(ident("other"), "commandline")) is None
