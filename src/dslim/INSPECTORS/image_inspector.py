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
Inspection of the "fat" source image: existence, metadata, and the Dockerfile
instructions that can be recovered from its history.
"""
import logging
import os
import re
from typing import List, Optional

import docker
import requests
from docker.errors import DockerException, ImageNotFound

from ..exceptions import ImageInspectorError
from ..MODELS.image_info import ImageInfo
from ..REGISTRY.image_reference import ImageReference

logger = logging.getLogger(__name__)

FAT_DOCKERFILE = "Dockerfile.fat"

_NOP_PREFIX = re.compile(r"^/bin/sh -c #\(nop\)\s*")
_SHELL_PREFIX = re.compile(r"^/bin/sh -c\s+")
_BUILD_ARGS_PREFIX = re.compile(r"^\|\d+(\s+\S+=\S*)*\s+")
_BUILDKIT_SUFFIX = re.compile(r"\s*# buildkit$")
_EXPOSE_MAP = re.compile(r"^EXPOSE map\[(.*)\]$")
_INSTRUCTIONS = (
    "ADD", "ARG", "CMD", "COPY", "ENTRYPOINT", "ENV", "EXPOSE", "HEALTHCHECK", "LABEL",
    "MAINTAINER", "ONBUILD", "RUN", "SHELL", "STOPSIGNAL", "USER", "VOLUME", "WORKDIR",
)


def history_to_instruction(created_by: str) -> Optional[str]:
    """
    Turns one 'CreatedBy' history value into a Dockerfile instruction.

    Returns None for empty records.
    """
    line = created_by.strip()
    if not line:
        return None

    line = _BUILDKIT_SUFFIX.sub("", _BUILD_ARGS_PREFIX.sub("", line))

    if _NOP_PREFIX.match(line):
        line = _NOP_PREFIX.sub("", line)
    elif _SHELL_PREFIX.match(line):
        line = "RUN " + _SHELL_PREFIX.sub("", line)
    elif line.split(" ", 1)[0] not in _INSTRUCTIONS:
        line = "RUN " + line

    expose = _EXPOSE_MAP.match(line)
    if expose:
        ports = [port.split(":", 1)[0] for port in expose.group(1).split()]
        line = "EXPOSE " + " ".join(ports)

    return line


class ImageInspector:
    """
    Resolves an image reference against the Docker daemon and extracts what the
    container inspector and the image builder need from it.
    """

    def __init__(self, client: docker.DockerClient, image_ref: str):
        """
        Looks the image up. A missing image is not an error, see image_exists().

        :param client: Connected Docker client.
        :param image_ref: Image name, name:tag or ID.
        :raises ImageInspectorError: If the reference is malformed or the lookup fails.
        """
        self.client = client
        self.image_ref = image_ref
        try:
            self.reference = ImageReference.parse(image_ref)
        except ValueError as e:
            raise ImageInspectorError(str(e)) from e

        self.image_info: Optional[ImageInfo] = None
        self.artifact_location: Optional[str] = None
        self.dockerfile_instructions: List[str] = []

        try:
            self._image = client.images.get(image_ref)
        except ImageNotFound:
            self._image = None
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ImageInspectorError(f"cannot look up image '{image_ref}': {e}") from e

    def image_exists(self) -> bool:
        return self._image is not None

    @property
    def slim_image_repo(self) -> str:
        """Repository name given to the minimized image when no tag is requested."""
        if self.reference.is_image_id and self.image_info and self.image_info.repo_tags:
            return ImageReference.parse(self.image_info.repo_tags[0]).slim_name
        return self.reference.slim_name

    def inspect(self) -> None:
        """
        Reads the image metadata and history.

        :raises ImageInspectorError: If the image is missing or Docker fails.
        """
        if self._image is None:
            raise ImageInspectorError(f"image not found: {self.image_ref}")
        try:
            self._image.reload()
            history = self._image.history()
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ImageInspectorError(f"cannot inspect image '{self.image_ref}': {e}") from e

        self.image_info = ImageInfo.from_attrs(self._image.attrs, history)
        logger.debug("inspected image %s (%d history records)", self.image_info.id, len(history))

    def process_collected_data(self) -> None:
        """
        Recovers the Dockerfile instructions from the history and saves them
        as Dockerfile.fat in the artifact location.

        :raises ImageInspectorError: If inspect() has not run, no artifact location
            is assigned, or the file cannot be written.
        """
        if self.image_info is None:
            raise ImageInspectorError("image must be inspected before its data is processed")
        if not self.artifact_location:
            raise ImageInspectorError("no artifact location assigned to the image inspector")

        # History is newest first
        instructions = []
        for entry in reversed(self.image_info.history):
            instruction = history_to_instruction(entry.created_by)
            if instruction:
                instructions.append(instruction)
        self.dockerfile_instructions = instructions

        path = os.path.join(self.artifact_location, FAT_DOCKERFILE)
        try:
            with open(path, "w") as f:
                f.write("# recovered from the image history of %s\n" % self.image_ref)
                for instruction in instructions:
                    f.write(instruction + "\n")
        except OSError as e:
            raise ImageInspectorError(f"cannot write {path}: {e}") from e

    def show_fat_image_docker_instructions(self) -> None:
        """
        Prints the recovered Dockerfile instructions of the source image.
        """
        if not self.dockerfile_instructions:
            print("dslim: no Dockerfile instructions recovered for the 'fat' image")
            return
        print("dslim: 'fat' image Dockerfile instructions:")
        for instruction in self.dockerfile_instructions:
            print(f"  {instruction}")
