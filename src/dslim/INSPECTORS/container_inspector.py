# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
The instrumented container: launch, observation of the files its processes use,
export of those files into the artifact location, and shutdown.
"""
import json
import logging
import os
import posixpath
import tarfile
import tempfile
from enum import Enum
from fnmatch import fnmatch
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlparse

import docker
import requests
from docker.errors import DockerException, NotFound

from ..exceptions import ContainerInspectorError
from ..MODELS.build_request import ContainerOverrides, VolumeMount
from ..UTILS.fsutil import files_location
from .image_inspector import ImageInspector

logger = logging.getLogger(__name__)

CONTAINER_REPORT = "creport.json"
STOP_TIMEOUT = 10

# Lists the executables, mapped files and open descriptors of every process
# except the snapshot shell itself.
SNAPSHOT_SCRIPT = r"""
for p in /proc/[0-9]*; do
  [ "$p" = "/proc/$$" ] && continue
  readlink "$p/exe" 2>/dev/null
  sed -n 's|^[^/]*\(/.*\)$|\1|p' "$p/maps" 2>/dev/null
  for f in "$p"/fd/*; do readlink "$f" 2>/dev/null; done
done
"""

PSEUDO_FS_PREFIXES = ("/proc", "/sys", "/dev")


class ContainerState(str, Enum):
    """Lifecycle of the instrumented container."""

    CONSTRUCTED = "constructed"
    RUNNING = "running"
    MONITORING_FINISHED = "monitoring-finished"
    SHUTDOWN = "shutdown"
    DATA_PROCESSED = "data-processed"


def parse_snapshot(output: str) -> Set[str]:
    """
    Extracts absolute file paths from the snapshot script output.
    """
    paths = set()
    for line in output.splitlines():
        path = line.strip()
        if path.endswith(" (deleted)"):
            continue
        if not path.startswith("/"):
            continue
        paths.add(posixpath.normpath(path))
    return paths


def is_excluded(path: str, exclude_paths: Iterable[str]) -> bool:
    """
    True when the path is one of the excluded paths, lies below one of them,
    or matches one of them as a glob pattern.
    """
    for pattern in exclude_paths:
        prefix = pattern.rstrip("/") or "/"
        if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
            return True
        if fnmatch(path, pattern):
            return True
    return False


def select_paths(observed: Iterable[str], include_paths: Iterable[str], exclude_paths: Iterable[str]) -> List[str]:
    """
    Observed paths plus included ones, minus pseudo filesystems and excluded paths.
    """
    selected = set(observed)
    selected.update(posixpath.normpath(p) for p in include_paths if p.startswith("/"))
    return sorted(
        path for path in selected
        if not is_excluded(path, PSEUDO_FS_PREFIXES) and not is_excluded(path, exclude_paths)
    )


class ContainerInspector:
    """
    Owns the one instrumented container of a build run.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        image_inspector: ImageInspector,
        local_volume_path: str,
        overrides: ContainerOverrides,
        show_logs: bool = False,
        volume_mounts: Optional[Dict[str, VolumeMount]] = None,
        exclude_paths: Optional[Iterable[str]] = None,
        include_paths: Optional[Iterable[str]] = None,
        debug: bool = False,
    ):
        """
        Validates the inputs. Nothing is started yet.

        :param client: Connected Docker client.
        :param image_inspector: An inspector whose image was inspected and has an artifact location.
        :param local_volume_path: Run-scoped directory of this image.
        :param overrides: Entrypoint, cmd, workdir, env and port overrides.
        :param show_logs: Print the container logs when it shuts down.
        :param volume_mounts: Host paths mounted into the container.
        :param exclude_paths: Paths or globs never exported.
        :param include_paths: Paths exported even when not observed.
        :param debug: Log every observed path.
        :raises ContainerInspectorError: If the image is not inspected or the paths are missing.
        """
        if image_inspector.image_info is None:
            raise ContainerInspectorError("image must be inspected before a container is created")
        if not image_inspector.artifact_location:
            raise ContainerInspectorError("image inspector has no artifact location")
        if not os.path.isdir(local_volume_path):
            raise ContainerInspectorError(f"local volume path does not exist: {local_volume_path}")

        self.client = client
        self.image_inspector = image_inspector
        self.local_volume_path = local_volume_path
        self.artifact_location = image_inspector.artifact_location
        self.overrides = overrides
        self.show_logs = show_logs
        self.volume_mounts = dict(volume_mounts or {})
        self.exclude_paths = set(exclude_paths or ())
        self.include_paths = set(include_paths or ())
        self.debug = debug

        self.state = ContainerState.CONSTRUCTED
        self.container = None
        self.observed_paths: List[str] = []
        self.exported_paths: List[str] = []
        self.failed_paths: List[str] = []

    def _container_options(self) -> Dict:
        image_info = self.image_inspector.image_info
        options = {
            "image": image_info.id,
            "detach": True,
            "labels": {"dslim.source-image": self.image_inspector.image_ref},
        }

        if self.overrides.clear_entrypoint:
            options["entrypoint"] = [""]
        elif self.overrides.entrypoint:
            options["entrypoint"] = list(self.overrides.entrypoint)

        if self.overrides.clear_cmd:
            options["command"] = []
        elif self.overrides.cmd:
            options["command"] = list(self.overrides.cmd)

        if self.overrides.workdir:
            options["working_dir"] = self.overrides.workdir
        if self.overrides.env:
            options["environment"] = list(self.overrides.env)

        ports = set(image_info.exposed_ports) | set(self.overrides.exposed_ports)
        if ports:
            options["ports"] = {port: None for port in sorted(ports)}

        if self.volume_mounts:
            options["volumes"] = dict(mount.to_docker() for mount in self.volume_mounts.values())

        return options

    def run_container(self) -> None:
        """
        Creates and starts the instrumented container.

        :raises ContainerInspectorError: If Docker refuses to create or start it.
        """
        if self.state != ContainerState.CONSTRUCTED:
            raise ContainerInspectorError(f"container already started (state: {self.state.value})")

        options = self._container_options()
        try:
            self.container = self.client.containers.create(**options)
            logger.info("dslim: created container %s", self.container.short_id)
            self.container.start()
            self.container.reload()
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ContainerInspectorError(f"cannot start container from {options['image']}: {e}") from e

        self.state = ContainerState.RUNNING

    @property
    def target_host(self) -> str:
        """Host the published ports are reachable on."""
        url = urlparse(self.client.api.base_url)
        if url.scheme.startswith("http+") or url.hostname in (None, "localhost", "localunixsocket"):
            return "127.0.0.1"
        return url.hostname

    def published_ports(self) -> List[Tuple[str, int]]:
        """
        TCP ports of the running container and the host ports they are published on.
        """
        if self.container is None:
            return []
        ports = (self.container.attrs.get("NetworkSettings") or {}).get("Ports") or {}
        published = []
        for container_port, bindings in sorted(ports.items()):
            if not container_port.endswith("/tcp") or not bindings:
                continue
            host_ports = sorted({int(b["HostPort"]) for b in bindings if b.get("HostPort")})
            for host_port in host_ports:
                published.append((container_port, host_port))
        return published

    def finish_monitoring(self) -> None:
        """
        Ends the observation window: snapshots the files in use and exports them,
        with the include paths, into the artifact location.

        Failures are logged. Whatever could be exported stays collected.
        """
        if self.state != ContainerState.RUNNING:
            logger.warning("finish_monitoring called on a container that is not running (%s)", self.state.value)
            return

        observed = self._snapshot()
        self.observed_paths = select_paths(observed, self.include_paths, self.exclude_paths)
        if self.debug:
            for path in self.observed_paths:
                logger.debug("observed: %s", path)

        files_dir = files_location(self.artifact_location)
        os.makedirs(files_dir, exist_ok=True)
        for path in self.observed_paths:
            if self._export(path, files_dir):
                self.exported_paths.append(path)
            else:
                self.failed_paths.append(path)

        logger.info(
            "dslim: collected %d files (%d could not be exported)",
            len(self.exported_paths), len(self.failed_paths),
        )
        self.state = ContainerState.MONITORING_FINISHED

    def _snapshot(self) -> Set[str]:
        try:
            result = self.container.exec_run(["sh", "-c", SNAPSHOT_SCRIPT], user="0")
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.warning("cannot observe container %s: %s", self.container.short_id, e)
            return set()
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        if result.exit_code not in (0, None) and not output:
            logger.warning("container observation exited with %s", result.exit_code)
        return parse_snapshot(output)

    def _export(self, path: str, files_dir: str) -> bool:
        dest_dir = os.path.join(files_dir, posixpath.dirname(path).lstrip("/"))
        try:
            stream, _ = self.container.get_archive(path)
            with tempfile.TemporaryFile() as archive:
                for chunk in stream:
                    archive.write(chunk)
                archive.seek(0)
                os.makedirs(dest_dir, exist_ok=True)
                with tarfile.open(fileobj=archive, mode="r:") as tar:
                    for member in tar.getmembers():
                        # Skip absolute paths and parent directory references
                        if member.name.startswith("/") or ".." in member.name.split("/"):
                            continue
                        _extract(tar, member, dest_dir)
        except NotFound:
            logger.debug("observed path vanished: %s", path)
            return False
        except (DockerException, requests.exceptions.RequestException, tarfile.TarError, OSError) as e:
            logger.debug("cannot export %s: %s", path, e)
            return False
        return True

    def shutdown_container(self) -> None:
        """
        Stops and removes the container, printing its logs first when asked to.

        :raises ContainerInspectorError: If stopping or removing fails.
        """
        if self.container is None:
            raise ContainerInspectorError("no container to shut down")

        if self.show_logs:
            self._print_logs()

        try:
            self.container.stop(timeout=STOP_TIMEOUT)
            self.container.remove(force=True)
        except NotFound:
            logger.debug("container %s already removed", self.container.short_id)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ContainerInspectorError(f"cannot shut down container {self.container.short_id}: {e}") from e
        finally:
            if self.state == ContainerState.MONITORING_FINISHED:
                self.state = ContainerState.SHUTDOWN

    def _print_logs(self) -> None:
        try:
            logs = self.container.logs(stdout=True, stderr=True)
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.warning("cannot read container logs: %s", e)
            return
        print(f"dslim: container {self.container.short_id} logs:")
        print(logs.decode("utf-8", errors="replace"))
        print("dslim: end of container logs")

    def has_collected_data(self) -> bool:
        return bool(self.exported_paths)

    def process_collected_data(self) -> None:
        """
        Writes the container report (creport.json) into the artifact location.

        :raises ContainerInspectorError: If monitoring has not finished or the report cannot be written.
        """
        if self.state not in (ContainerState.MONITORING_FINISHED, ContainerState.SHUTDOWN):
            raise ContainerInspectorError(f"monitoring has not finished (state: {self.state.value})")

        report = {
            "image_id": self.image_inspector.image_info.id,
            "image_ref": self.image_inspector.image_ref,
            "container_id": self.container.id if self.container is not None else None,
            "monitor": {
                "file_count": len(self.exported_paths),
                "files": self.exported_paths,
                "failed": self.failed_paths,
            },
            "include_paths": sorted(self.include_paths),
            "exclude_paths": sorted(self.exclude_paths),
        }
        path = os.path.join(self.artifact_location, CONTAINER_REPORT)
        try:
            with open(path, "w") as f:
                json.dump(report, f, indent=2)
        except OSError as e:
            raise ContainerInspectorError(f"cannot write {path}: {e}") from e

        self.state = ContainerState.DATA_PROCESSED


def _extract(tar: tarfile.TarFile, member: tarfile.TarInfo, dest_dir: str) -> None:
    # 'tar' keeps absolute symlink targets
    if hasattr(tarfile, "tar_filter"):
        tar.extract(member, dest_dir, filter="tar")
    else:
        tar.extract(member, dest_dir)
