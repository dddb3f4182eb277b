"""
External commands used to produce snapshots.

`SnapshotTool` is the capability the creation pipeline depends on; `EtcdctlTool`
implements it by shelling out to etcdctl. `ClusterStateFetcher` pulls the
full-cluster-state configmap via kubectl so it can be bundled with a snapshot.
"""
import json
import os
import subprocess
import time
from abc import ABC, abstractmethod

from etcdbackup.config import DEFAULT_BACKUP_RETRIES, DEFAULT_FAILURE_INTERVAL
from etcdbackup.errors import ToolInvocationError
from etcdbackup.utils import get_logger

logger = get_logger(__name__)

UNHEALTHY_MARKER = 'unhealthy'
KUBECTL_BIN = '/usr/local/bin/kubectl'
KUBECONFIG_PATH = '/etc/kubernetes/ssl/kubecfg-kube-node.yaml'
STATE_CONFIGMAP = 'full-cluster-state'


def run_command(command, description, timeout=300, env=None):
    """Run `command` and return its combined stdout/stderr.

    Raises:
        ToolInvocationError: non-zero exit, timeout or missing binary
    """
    logger.debug("Running: %s", description)
    try:
        result = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            env=env,
        )
    except subprocess.TimeoutExpired as e:
        raise ToolInvocationError(f"Timeout: {description} took too long to execute.", output=str(e.output or '')) from e
    except FileNotFoundError as e:
        raise ToolInvocationError(f"Error: command not found for {description}: {command[0]}") from e

    output = (result.stdout or '').strip()
    if result.returncode != 0:
        raise ToolInvocationError(f"Failed: {description} (exit status {result.returncode}): {output}", output=output)
    return output


class SnapshotTool(ABC):
    """Produces snapshot files and reports cluster health."""

    @abstractmethod
    def health(self):
        """Return (healthy, output)."""

    @abstractmethod
    def save(self, path):
        """Write a snapshot to `path`; raise ToolInvocationError on failure."""


class EtcdctlTool(SnapshotTool):
    """SnapshotTool backed by the etcdctl v3 CLI."""

    def __init__(self, endpoints, cacert, cert, key, binary='etcdctl', timeout=300):
        self.endpoints = endpoints
        self.cacert = cacert
        self.cert = cert
        self.key = key
        self.binary = binary
        self.timeout = timeout

    def _base_command(self):
        return [
            self.binary,
            f"--endpoints={self.endpoints}",
            f"--cacert={self.cacert}",
            f"--cert={self.cert}",
            f"--key={self.key}",
        ]

    def _env(self):
        env = dict(os.environ)
        env['ETCDCTL_API'] = '3'
        return env

    def health(self):
        cmd = self._base_command() + ['endpoint', 'health']
        try:
            output = run_command(cmd, 'etcd endpoint health', timeout=self.timeout, env=self._env())
        except ToolInvocationError as e:
            # Only the marker decides health; a bare exit error is left to `save`
            output = e.output or str(e)
        return UNHEALTHY_MARKER not in output, output

    def save(self, path):
        cmd = self._base_command() + ['snapshot', 'save', path]
        return run_command(cmd, f"etcd snapshot save {path}", timeout=self.timeout, env=self._env())


class ClusterStateFetcher:
    """Write the cluster state document next to a snapshot before it is archived."""

    def __init__(self, state_dir, retries=DEFAULT_BACKUP_RETRIES, failure_interval=DEFAULT_FAILURE_INTERVAL,
                 kubectl=KUBECTL_BIN, kubeconfig=KUBECONFIG_PATH, sleep=time.sleep):
        self.state_dir = state_dir
        self.retries = retries
        self.failure_interval = failure_interval
        self.kubectl = kubectl
        self.kubeconfig = kubeconfig
        self._sleep = sleep

    def command(self):
        return [
            self.kubectl, '--request-timeout=30s', '--kubeconfig', self.kubeconfig,
            '-n', 'kube-system', 'get', 'configmap', STATE_CONFIGMAP, '-o', 'json',
        ]

    def fetch(self):
        """Return the configmap JSON, retrying with the failure interval."""
        last_error = None
        for attempt in range(self.retries + 1):
            if attempt > 0:
                self._sleep(self.failure_interval)
            logger.info("[Backup] Trying to retrieve configmap %s using kubectl: attempt=%d", STATE_CONFIGMAP, attempt + 1)
            try:
                return run_command(self.command(), f"kubectl get configmap {STATE_CONFIGMAP}", timeout=60)
            except ToolInvocationError as e:
                last_error = e
                logger.warning("[Backup] Failed to retrieve configmap %s: attempt=%d error=%s", STATE_CONFIGMAP, attempt + 1, e)
        raise ToolInvocationError(f"Failed to retrieve configmap {STATE_CONFIGMAP} using kubectl: {last_error}")

    def write_state_file(self, name):
        """Fetch the cluster state and write `<state_dir>/<name>.rkestate`.

        Returns:
            Path of the written state file

        Raises:
            ToolInvocationError: kubectl failed on every attempt
            ValueError: the configmap does not hold a JSON state document
            OSError: the state file cannot be written
        """
        raw = self.fetch()
        return write_state_document(raw, os.path.join(self.state_dir, f"{name}.rkestate"))


def write_state_document(configmap_json, state_file_path):
    """Extract data['full-cluster-state'] from a configmap and write it pretty-printed."""
    try:
        configmap = json.loads(configmap_json)
    except ValueError as e:
        raise ValueError(f"Failed to unmarshal cluster state from configmap {STATE_CONFIGMAP}: {e}") from e

    data = configmap.get('data') if isinstance(configmap, dict) else None
    state = data.get(STATE_CONFIGMAP, '') if isinstance(data, dict) else ''
    try:
        pretty = json.dumps(json.loads(state), indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Failed to indent JSON for state file: {e}") from e

    with open(state_file_path, 'w', encoding='utf-8') as fh:
        fh.write(pretty)
    logger.info("[Backup] Successfully written state file content to file: filepath=%s", state_file_path)
    return state_file_path
