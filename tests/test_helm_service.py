"""Helm CLI wrapper, with subprocess mocked out."""

import json
import subprocess
from unittest.mock import patch

import pytest

from store_platform.errors import ClusterError
from store_platform.services.helm_service import HelmInstaller, _redact


def completed(args=None, rc=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args or [], rc, stdout=stdout, stderr=stderr)


def status_json(state):
    return completed(stdout=json.dumps({"info": {"status": state}}))


@pytest.fixture
def helm(settings):
    return HelmInstaller(settings)


def commands(mock_run):
    return [c.args[0] for c in mock_run.call_args_list]


def test_redact_masks_secret_values():
    args = ["--set", "mariadb.auth.password=hunter2", "--set", "storeName=shop", "--set", "api.token=abc"]
    assert _redact(args) == ["--set", "mariadb.auth.password=***", "--set", "storeName=shop", "--set", "api.token=***"]


def test_release_status_parses_json(helm):
    with patch("subprocess.run", return_value=status_json("deployed")):
        assert helm.release_status("shop", "store-1") == "deployed"
    with patch("subprocess.run", return_value=completed(rc=1, stderr="Error: release: not found")):
        assert helm.release_status("shop", "store-1") is None


def test_fresh_install(helm, settings):
    with patch("subprocess.run", side_effect=[completed(rc=1), completed()]) as run:
        helm.install("shop", "/charts/woo", "store-1", {"storeName": "shop", "db.password": "pw"})

    install = commands(run)[1]
    assert install[:4] == [settings.HELM_BINARY, "install", "shop", "/charts/woo"]
    assert "--create-namespace" in install
    assert "storeName=shop" in install
    assert "db.password=pw" in install


def test_deployed_release_is_upgraded(helm):
    with patch("subprocess.run", side_effect=[status_json("deployed"), completed()]) as run:
        helm.install("shop", "/charts/woo", "store-1", {})
    assert commands(run)[1][1] == "upgrade"


def test_stuck_release_is_cleaned_up_before_install(helm):
    with patch(
        "subprocess.run",
        side_effect=[status_json("pending-install"), completed(), completed()],
    ) as run:
        helm.install("shop", "/charts/woo", "store-1", {})

    cleanup, install = commands(run)[1:]
    assert cleanup[1] == "uninstall" and "--no-hooks" in cleanup
    assert install[1] == "install"


def test_failed_command_raises_with_stderr(helm):
    with patch(
        "subprocess.run",
        side_effect=[completed(rc=1), completed(rc=1, stderr="Error: chart not found")],
    ):
        with pytest.raises(ClusterError) as exc:
            helm.install("shop", "/charts/missing", "store-1", {})
    assert "rc=1" in exc.value.message
    assert "chart not found" in exc.value.detail


def test_timeout_and_missing_binary_become_cluster_errors(helm):
    with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["helm"], 330)):
        with pytest.raises(ClusterError, match="timed out"):
            helm.run(["list"])
    with patch("subprocess.run", side_effect=FileNotFoundError()):
        with pytest.raises(ClusterError, match="not found"):
            helm.run(["list"])


def test_uninstall_missing_release_is_404(helm):
    with patch("subprocess.run", return_value=completed(rc=1)):
        with pytest.raises(ClusterError) as exc:
            helm.uninstall("shop", "store-1")
    assert exc.value.is_not_found


def test_uninstall_existing_release(helm):
    with patch("subprocess.run", side_effect=[status_json("deployed"), completed()]) as run:
        helm.uninstall("shop", "store-1")
    assert commands(run)[1][1:] == ["uninstall", "shop", "-n", "store-1"]
