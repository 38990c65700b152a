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
Builder for the minimized image: renders a Dockerfile over the exported files
and asks Docker to build it.
"""
import json
import logging
import os
from typing import Dict, FrozenSet, List, Optional

import docker
import requests
from docker.errors import BuildError, DockerException
from jinja2 import Environment

from ..exceptions import ImageBuilderError
from ..MODELS.build_request import ContainerOverrides
from ..MODELS.image_info import ImageInfo
from ..UTILS.fsutil import FILES_DIR, files_location

logger = logging.getLogger(__name__)

SLIM_DOCKERFILE = "Dockerfile"

DOCKERFILE_TEMPLATE = """FROM scratch
COPY {{ files_dir }} /
{% for item in env %}
ENV {{ item.key }}={{ item.value | dockerjson }}
{% endfor %}
{% for item in labels %}
LABEL {{ item.key | dockerjson }}={{ item.value | dockerjson }}
{% endfor %}
{% if workdir %}
WORKDIR {{ workdir }}
{% endif %}
{% if user %}
USER {{ user }}
{% endif %}
{% for port in exposed_ports %}
EXPOSE {{ port }}
{% endfor %}
{% if entrypoint is not none %}
ENTRYPOINT {{ entrypoint | dockerjson }}
{% endif %}
{% if cmd is not none %}
CMD {{ cmd | dockerjson }}
{% endif %}
"""


class ImageBuilder:
    """
    Packages the artifact location into a minimized image.
    Image metadata comes from the source image, with flagged instructions
    taken from the container overrides instead.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        repo_name: str,
        image_info: ImageInfo,
        artifact_location: str,
        image_overrides: FrozenSet[str],
        overrides: ContainerOverrides,
    ):
        """
        Initializes the ImageBuilder.

        :param client: Connected Docker client.
        :param repo_name: Tag of the resulting image.
        :param image_info: Metadata of the source image.
        :param artifact_location: Directory holding the exported files.
        :param image_overrides: Instructions taken from overrides ('entrypoint', 'cmd', 'workdir', 'env', 'expose').
        :param overrides: The container overrides.
        :raises ImageBuilderError: If the tag is empty or the artifact location is missing.
        """
        if not repo_name:
            raise ImageBuilderError("no name for the minimized image")
        if not artifact_location or not os.path.isdir(artifact_location):
            raise ImageBuilderError(f"artifact location does not exist: {artifact_location}")

        self.client = client
        self.repo_name = repo_name
        self.image_info = image_info
        self.artifact_location = artifact_location
        self.image_overrides = frozenset(image_overrides)
        self.overrides = overrides
        self.template = _template_environment().from_string(DOCKERFILE_TEMPLATE)

        files_dir = files_location(artifact_location)
        self.has_data = os.path.isdir(files_dir) and any(os.scandir(files_dir))

    def _overridden(self, flag: str) -> bool:
        return flag in self.image_overrides

    def _entrypoint(self) -> Optional[List[str]]:
        if self._overridden("entrypoint"):
            if self.overrides.clear_entrypoint:
                return []
            if self.overrides.entrypoint:
                return list(self.overrides.entrypoint)
        return list(self.image_info.entrypoint) or None

    def _cmd(self) -> Optional[List[str]]:
        if self._overridden("cmd"):
            if self.overrides.clear_cmd:
                return []
            if self.overrides.cmd:
                return list(self.overrides.cmd)
        return list(self.image_info.cmd) or None

    def _workdir(self) -> str:
        if self._overridden("workdir") and self.overrides.workdir:
            return self.overrides.workdir
        return self.image_info.working_dir

    def _env(self) -> Dict[str, str]:
        env = {}
        items = list(self.image_info.env)
        if self._overridden("env"):
            items.extend(self.overrides.env)
        for item in items:
            key, _, value = item.partition("=")
            env[key] = value
        return env

    def _exposed_ports(self) -> List[str]:
        ports = set(self.image_info.exposed_ports)
        if self._overridden("expose"):
            ports.update(self.overrides.exposed_ports)
        return sorted(ports)

    def render_dockerfile(self) -> str:
        """
        Renders the Dockerfile of the minimized image.
        """
        return self.template.render(
            files_dir=FILES_DIR,
            env=[{"key": k, "value": v} for k, v in self._env().items()],
            labels=[{"key": k, "value": v} for k, v in sorted(self.image_info.labels.items())],
            workdir=self._workdir(),
            user=self.image_info.user,
            exposed_ports=self._exposed_ports(),
            entrypoint=self._entrypoint(),
            cmd=self._cmd(),
        )

    def build(self) -> None:
        """
        Writes the Dockerfile into the artifact location and builds the image.

        :raises ImageBuilderError: If the Dockerfile cannot be written or the build fails.
        """
        # An empty files directory still yields an (empty) layer
        os.makedirs(files_location(self.artifact_location), exist_ok=True)

        dockerfile = os.path.join(self.artifact_location, SLIM_DOCKERFILE)
        try:
            with open(dockerfile, "w") as f:
                f.write(self.render_dockerfile())
        except OSError as e:
            raise ImageBuilderError(f"cannot write {dockerfile}: {e}") from e

        logger.debug("building %s from %s", self.repo_name, dockerfile)
        try:
            _, build_log = self.client.images.build(
                path=self.artifact_location,
                dockerfile=SLIM_DOCKERFILE,
                tag=self.repo_name,
                rm=True,
                forcerm=True,
            )
        except BuildError as e:
            raise ImageBuilderError(f"cannot build {self.repo_name}: {e.msg}") from e
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ImageBuilderError(f"cannot build {self.repo_name}: {e}") from e

        for chunk in build_log:
            if "stream" in chunk and chunk["stream"].strip():
                logger.debug("build: %s", chunk["stream"].strip())


def _docker_json(value) -> str:
    return json.dumps(value, ensure_ascii=False)


def _template_environment() -> Environment:
    env = Environment(trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)
    env.filters["dockerjson"] = _docker_json
    return env
