"""
Helm wrapper — installs, upgrades and uninstalls store charts via the helm CLI.

Does NOT use --wait: helm creates the resources immediately and the
provisioning task's own readiness polling handles waiting for pods.
"""

import json
import logging
import subprocess
from typing import Dict, List, Optional

from ..config import Settings
from ..errors import ClusterError

logger = logging.getLogger("helm_service")

# Releases in these states block a fresh install until cleared.
STUCK_STATES = {"pending-install", "pending-upgrade", "pending-rollback", "failed"}

# Value keys whose contents must never reach the logs.
_SECRET_MARKERS = ("password", "secret", "token")


def _redact(args: List[str]) -> List[str]:
    redacted = []
    for arg in args:
        key, sep, _ = arg.partition("=")
        if sep and any(marker in key.lower() for marker in _SECRET_MARKERS):
            redacted.append(f"{key}=***")
        else:
            redacted.append(arg)
    return redacted


class HelmInstaller:
    """PackageInstaller backed by the helm binary."""

    def __init__(self, settings: Settings):
        self.binary = settings.HELM_BINARY
        self.timeout = settings.HELM_TIMEOUT

    def run(self, args: List[str], check: bool = True) -> subprocess.CompletedProcess:
        """Execute a Helm CLI command. Raises ClusterError on failure if check=True."""
        cmd = [self.binary] + args
        logger.info(f"helm> {' '.join(_redact(cmd))}")
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout + 30
            )
        except subprocess.TimeoutExpired as e:
            raise ClusterError(f"Helm command timed out after {e.timeout}s: {' '.join(_redact(cmd))}")
        except FileNotFoundError as e:
            raise ClusterError(f"Helm binary not found: {self.binary}") from e
        if result.stdout:
            logger.debug(f"helm stdout: {result.stdout[:800]}")
        if result.stderr:
            logger.warning(f"helm stderr: {result.stderr[:800]}")
        if check and result.returncode != 0:
            raise ClusterError(
                f"Helm command failed (rc={result.returncode}): {result.stderr[:500]}",
                detail=result.stderr,
            )
        return result

    def release_status(self, release: str, namespace: str) -> Optional[str]:
        """
        Get the status of a Helm release. Returns the status string
        (e.g. 'deployed', 'pending-install', 'failed') or None if not found.
        """
        r = self.run(["status", release, "-n", namespace, "-o", "json"], check=False)
        if r.returncode != 0:
            return None
        try:
            data = json.loads(r.stdout)
        except ValueError:
            return "unknown"
        return data.get("info", {}).get("status", "unknown")

    def cleanup_stuck(self, release: str, namespace: str):
        """Force-remove a stuck release so a fresh install can proceed."""
        logger.warning(f"Cleaning up stuck Helm release {release} in {namespace}")
        self.run(["uninstall", release, "-n", namespace, "--no-hooks"], check=False)

    def install(self, release: str, chart: str, namespace: str, values: Dict[str, str]) -> None:
        """Install the chart, or upgrade it when the release is already deployed."""
        set_args = []
        for k, v in values.items():
            set_args += ["--set", f"{k}={v}"]

        status = self.release_status(release, namespace)

        if status in STUCK_STATES:
            logger.warning(f"Helm release {release} is stuck in '{status}' — cleaning up")
            self.cleanup_stuck(release, namespace)
            status = None

        if status == "deployed":
            logger.info(f"Helm release {release} is deployed — upgrading")
            self.run([
                "upgrade", release, chart,
                "-n", namespace,
                "--timeout", f"{self.timeout}s",
            ] + set_args)
        else:
            logger.info(f"Installing Helm release {release}")
            self.run([
                "install", release, chart,
                "-n", namespace,
                "--create-namespace",
                "--timeout", f"{self.timeout}s",
            ] + set_args)

    def uninstall(self, release: str, namespace: str) -> None:
        """Uninstall a release. A missing release raises ClusterError(status=404)."""
        if self.release_status(release, namespace) is None:
            raise ClusterError(f"Helm release {release} not found in {namespace}", status=404)
        self.run(["uninstall", release, "-n", namespace])
        logger.info(f"Helm release {release} uninstalled")
