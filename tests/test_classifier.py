import pytest

from myrepo.classifier import DirectoryListing, PackageClassifier, normalize_release, releases_equivalent
from myrepo.models import InstalledPackage, PackageStatus, RepoId
from conftest import ident, touch_rpm


@pytest.fixture
def repo_dir(tmp_path):
    directory = tmp_path / "baseos" / "getPackage"
    directory.mkdir(parents=True)
    return directory


@pytest.fixture
def classifier():
    return PackageClassifier()


def classify(classifier, repo_dir, identity):
    return classifier.classify(InstalledPackage(identity, "baseos"), RepoId("baseos"), repo_dir)


@pytest.mark.parametrize("release1, release2, expected", [
    ("1.module+el9.1.0+20712+f5a0e0a6", "1.module_el9.1.0+20712+f5a0e0a6", True),
    ("2.el9_0", "2.el9", True),
    ("2.EL9", "2.el9", True),
    ("3.el9_1", "3.el9", False),
    ("1.el9", "2.el9", False),
])
def test_releases_equivalent(release1, release2, expected):
    assert releases_equivalent(release1, release2) is expected


def test_normalize_release_is_idempotent():
    once = normalize_release("1.module+el9.1.0+20712")
    assert normalize_release(once) == once


def test_exact_file_exists(classifier, repo_dir):
    exact = touch_rpm(repo_dir, "bash-5.1.8-6.el9.x86_64.rpm")
    result = classify(classifier, repo_dir, ident("bash", "5.1.8", "6.el9"))
    assert result.status is PackageStatus.EXISTS
    assert result.stale_files == []
    assert result.matched_file == exact


def test_alias_release_exists(classifier, repo_dir):
    alias = touch_rpm(repo_dir, "nodejs-16.14.0-1.module_el9.1.0+20712+f5a0e0a6.x86_64.rpm")
    result = classify(classifier, repo_dir, ident("nodejs", "16.14.0", "1.module+el9.1.0+20712+f5a0e0a6"))
    assert result.status is PackageStatus.EXISTS
    assert result.matched_file == alias


def test_newer_on_disk_is_never_downgraded(classifier, repo_dir):
    newer = touch_rpm(repo_dir, "kernel-5.14.0-162.el9.x86_64.rpm")
    result = classify(classifier, repo_dir, ident("kernel", "5.14.0", "70.el9"))
    assert result.status is PackageStatus.EXISTS
    assert result.matched_file == newer


def test_older_on_disk_is_update_with_exact_stale_files(classifier, repo_dir):
    old1 = touch_rpm(repo_dir, "openssl-3.0.1-41.el9.x86_64.rpm")
    old2 = touch_rpm(repo_dir, "openssl-3.0.1-43.el9.x86_64.rpm")
    touch_rpm(repo_dir, "openssl-3.0.1-43.el9.noarch.rpm")  # other arch is untouched
    result = classify(classifier, repo_dir, ident("openssl", "3.0.7", "16.el9"))
    assert result.status is PackageStatus.UPDATE
    assert result.stale_files == [old1, old2]


def test_update_compares_numerically(classifier, repo_dir):
    touch_rpm(repo_dir, "tool-10.2-1.el9.x86_64.rpm")
    result = classify(classifier, repo_dir, ident("tool", "10.10", "1.el9"))
    assert result.status is PackageStatus.UPDATE


def test_missing_package_is_new(classifier, repo_dir):
    touch_rpm(repo_dir, "bash-5.1.8-6.el9.x86_64.rpm")
    result = classify(classifier, repo_dir, ident("zsh", "5.8", "9.el9"))
    assert result.status is PackageStatus.NEW
    assert result.directory == repo_dir


def test_missing_directory_is_new(classifier, tmp_path):
    result = classify(classifier, tmp_path / "absent", ident("zsh"))
    assert result.status is PackageStatus.NEW


def test_unparseable_files_are_ignored(classifier, repo_dir):
    touch_rpm(repo_dir, "garbage.rpm")
    listing = DirectoryListing.scan(repo_dir)
    assert "garbage.rpm" in listing.filenames
    assert listing.by_name_arch == {}


def test_classify_repository_uses_one_listing(classifier, repo_dir, mocker):
    touch_rpm(repo_dir, "a-0.9-1.el9.x86_64.rpm")
    scan = mocker.spy(DirectoryListing, "scan")
    packages = [InstalledPackage(ident("a"), "baseos"), InstalledPackage(ident("b"), "baseos")]
    results = classifier.classify_repository(RepoId("baseos"), repo_dir, packages)
    assert [r.status for r in results] == [PackageStatus.UPDATE, PackageStatus.NEW]
    assert scan.call_count == 1


def test_other_installed_build_is_neither_stale_nor_a_match(repo_dir):
    # Two kernels installed side by side; the mirror holds the older one
    older = ident("kernel", "5.14.0", "70.el9")
    newer = ident("kernel", "5.14.0", "162.el9")
    kept = touch_rpm(repo_dir, older.filename)
    classifier = PackageClassifier(frozenset({older.nvra, newer.nvra}))

    assert classify(classifier, repo_dir, older).status is PackageStatus.EXISTS
    result = classify(classifier, repo_dir, newer)
    assert result.status is PackageStatus.NEW
    assert result.stale_files == []
    assert kept.exists()


def test_installed_newer_build_does_not_hide_missing_older_one(repo_dir):
    older = ident("kernel", "5.14.0", "70.el9")
    newer = ident("kernel", "5.14.0", "162.el9")
    touch_rpm(repo_dir, newer.filename)
    classifier = PackageClassifier(frozenset({older.nvra, newer.nvra}))
    assert classify(classifier, repo_dir, older).status is PackageStatus.NEW


def test_uninstalled_build_is_still_stale(repo_dir):
    old = touch_rpm(repo_dir, "openssl-3.0.1-41.el9.x86_64.rpm")
    current = ident("openssl", "3.0.7", "16.el9")
    classifier = PackageClassifier(frozenset({current.nvra}))
    result = classify(classifier, repo_dir, current)
    assert result.status is PackageStatus.UPDATE
    assert result.stale_files == [old]


def test_force_redownload_replaces_the_same_build(repo_dir):
    exact = touch_rpm(repo_dir, "bash-5.1.8-6.el9.x86_64.rpm")
    classifier = PackageClassifier(force_redownload=True)
    result = classify(classifier, repo_dir, ident("bash", "5.1.8", "6.el9"))
    assert result.status is PackageStatus.UPDATE
    assert result.stale_files == [exact]


def test_force_redownload_replaces_an_alias_spelling(repo_dir):
    alias = touch_rpm(repo_dir, "nodejs-16.14.0-1.module_el9.1.0+20712+f5a0e0a6.x86_64.rpm")
    classifier = PackageClassifier(force_redownload=True)
    result = classify(classifier, repo_dir, ident("nodejs", "16.14.0", "1.module+el9.1.0+20712+f5a0e0a6"))
    assert result.status is PackageStatus.UPDATE
    assert result.stale_files == [alias]


def test_force_redownload_never_replaces_a_newer_file(repo_dir):
    touch_rpm(repo_dir, "kernel-5.14.0-162.el9.x86_64.rpm")
    classifier = PackageClassifier(force_redownload=True)
    assert classify(classifier, repo_dir, ident("kernel", "5.14.0", "70.el9")).status is PackageStatus.EXISTS


def test_force_redownload_leaves_protected_repositories_alone(repo_dir):
    touch_rpm(repo_dir, "bash-5.1.8-6.el9.x86_64.rpm")
    classifier = PackageClassifier(force_redownload=True, protected_repos={"baseos"})
    assert classify(classifier, repo_dir, ident("bash", "5.1.8", "6.el9")).status is PackageStatus.EXISTS
