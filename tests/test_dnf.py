import subprocess
import pytest

from myrepo import dnf
from myrepo.dnf import DnfClient, describe_failure, needs_elevation, run_command
from myrepo.exceptions import InventoryError
from myrepo.models import DownloadBatch, RepoId
from conftest import FakeRunner, ident


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


@pytest.fixture
def no_sleep(mocker):
    return mocker.patch("myrepo.dnf.time.sleep")

# --- run_command ---

def test_run_command_timeout_returns_none(mocker):
    mocker.patch("myrepo.dnf.subprocess.run", side_effect=subprocess.TimeoutExpired(["dnf"], 5))
    assert run_command(["dnf", "repolist"], 5) is None


def test_run_command_missing_program_returns_none(mocker):
    mocker.patch("myrepo.dnf.subprocess.run", side_effect=FileNotFoundError)
    assert run_command(["createrepo_c"], 5) is None


def test_run_command_passes_timeout(mocker):
    mock_run = mocker.patch("myrepo.dnf.subprocess.run", return_value=completed("ok"))
    assert run_command(["true"], 7, input_text="x").stdout == "ok"
    mock_run.assert_called_once_with(["true"], input="x", capture_output=True, text=True, timeout=7, check=False)


def test_describe_failure():
    assert "timed out" in describe_failure(None, 10)
    assert describe_failure(completed(returncode=1, stderr="warn\nError: No match\n"), 10) == \
        "exit status 1: Error: No match"
    assert describe_failure(completed(returncode=2), 10) == "exit status 2"


def test_needs_elevation(settings, mocker, tmp_path):
    assert not needs_elevation(settings)
    settings.elevate = True
    mocker.patch("myrepo.dnf.os.geteuid", return_value=1000)
    assert needs_elevation(settings)
    assert not needs_elevation(settings, tmp_path / "new" / "dir")  # nearest existing parent is writable

# --- DnfClient ---

def test_list_installed(settings):
    client = DnfClient(settings, runner=lambda cmd, timeout, input_text=None: completed(
        "bash|0|5.1.8|6.el9|x86_64|@baseos\n"))
    installed = client.list_installed()
    assert [p.identity for p in installed] == [ident("bash", "5.1.8", "6.el9")]
    assert installed[0].origin == "baseos"


def test_list_installed_retries_then_raises(settings, no_sleep):
    runner = FakeRunner(returncode=1)
    client = DnfClient(settings, runner=runner)
    with pytest.raises(InventoryError):
        client.list_installed()
    assert len(runner.calls) == settings.max_retries
    assert no_sleep.call_count == settings.max_retries - 1


def test_query_retry_backoff(settings, no_sleep):
    settings.retry_delay = 2
    outputs = iter([None, completed(returncode=1), completed("x|0|1|1|noarch\n")])
    client = DnfClient(settings, runner=lambda cmd, timeout, input_text=None: next(outputs))
    assert client.query_repository(RepoId("baseos"), ["x"]) == {ident("x", "1", "1", "noarch")}
    assert [c.args[0] for c in no_sleep.call_args_list] == [2, 4]


def test_list_repositories(settings):
    outputs = {
        "--enabled": "repo id  repo name\nbaseos  BaseOS\nappstream  AppStream\n",
        "--disabled": "repo id  repo name\nlegacy  Legacy\nbaseos  BaseOS\n",
    }
    client = DnfClient(settings, runner=lambda cmd, timeout, input_text=None: completed(outputs[cmd[2]]))
    enabled, disabled = client.list_repositories()
    assert enabled == {"baseos", "appstream"}
    assert disabled == {"legacy"}


def test_query_repository_chunks_names(settings):
    settings.repoquery_chunk_size = 2
    runner = FakeRunner()
    client = DnfClient(settings, runner=runner)
    assert client.query_repository(RepoId("baseos"), ["c", "a", "b", "a"]) == set()
    assert len(runner.calls) == 2
    first = runner.calls[0]
    assert "--disablerepo=*" in first
    assert "--enablerepo=baseos" in first
    assert "--arch=x86_64,noarch" in first
    assert first[-2:] == ["a", "b"]
    assert runner.calls[1][-1] == "c"


def test_query_repository_no_names_skips_dnf(settings):
    runner = FakeRunner()
    assert DnfClient(settings, runner=runner).query_repository(RepoId("baseos"), []) == set()
    assert runner.calls == []


def test_query_repository_failure_is_unknown(settings, no_sleep):
    client = DnfClient(settings, runner=FakeRunner(returncode=1))
    assert client.query_repository(RepoId("baseos"), ["a"]) is None


def test_installed_origin(settings):
    client = DnfClient(settings, runner=lambda cmd, timeout, input_text=None: completed("@appstream\n"))
    assert client.installed_origin(ident("a")) == "appstream"
    client = DnfClient(settings, runner=FakeRunner(returncode=1))
    assert client.installed_origin(ident("a")) is None


def test_download_command(settings, tmp_path):
    runner = FakeRunner()
    client = DnfClient(settings, runner=runner)
    batch = DownloadBatch(RepoId("legacy"), tmp_path, ["a-1-1.x86_64", "b-1-1.noarch"], enable_repo=True)
    assert client.download(batch) == (True, "")
    cmd = runner.calls[0]
    assert cmd[:3] == ["dnf", "download", "-q"]
    assert f"--destdir={tmp_path}" in cmd
    assert "--enablerepo=legacy" in cmd
    assert cmd[-2:] == ["a-1-1.x86_64", "b-1-1.noarch"]


def test_download_failure_reason(settings, tmp_path):
    client = DnfClient(settings, runner=FakeRunner(returncode=1))
    ok, reason = client.download(DownloadBatch(RepoId("baseos"), tmp_path, ["a-1-1.x86_64"]))
    assert not ok
    assert reason == "exit status 1: boom"


def test_download_uses_sudo_when_directory_not_writable(settings, mocker, tmp_path):
    settings.elevate = True
    mocker.patch.object(dnf, "needs_elevation", return_value=True)
    runner = FakeRunner()
    DnfClient(settings, runner=runner).download(DownloadBatch(RepoId("baseos"), tmp_path, ["a-1-1.x86_64"]))
    assert runner.calls[0][:3] == ["sudo", "-n", "dnf"]
