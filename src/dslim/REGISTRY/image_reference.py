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
Image reference parsing and naming of minimized images.
Parses references like 'nginx:latest', 'localhost:5000/app:v1' or a bare image ID.
"""

import re
from typing import Optional
from dataclasses import dataclass

_IMAGE_ID = re.compile(r"^(sha256:)?[0-9a-f]{12,64}$")


@dataclass
class ImageReference:
    """
    Parsed Docker image reference.

    Examples:
        - nginx -> docker.io/library/nginx:latest, slim name nginx.slim
        - myuser/app:v1 -> docker.io/myuser/app:v1, slim name myuser/app.slim
        - localhost:5000/app:v1 -> slim name localhost:5000/app.slim
        - sha256:4f0f... -> image ID, slim name dslim-4f0f....slim
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None
    image_id: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"
    SLIM_SUFFIX = ".slim"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse a Docker image reference string.

        Args:
            reference: Image name, name:tag, name@digest or image ID.

        Returns:
            Parsed ImageReference object.
        """
        if not reference or not reference.strip():
            raise ValueError("Empty image reference")
        reference = reference.strip()

        if _IMAGE_ID.match(reference):
            image_id = reference.split(":", 1)[-1]
            return cls(registry="", repository="", image_id=image_id)

        name, _, digest = reference.partition("@")

        # A colon after the last slash separates the tag; earlier ones belong to a registry port
        tag = None
        slash = name.rfind("/")
        colon = name.rfind(":")
        if colon > slash:
            name, tag = name[:colon], name[colon + 1 :]

        first, sep, rest = name.partition("/")
        if sep and ("." in first or ":" in first or first == "localhost"):
            registry, repository = first, rest
        elif sep:
            registry, repository = cls.DEFAULT_REGISTRY, name
        else:
            registry, repository = cls.DEFAULT_REGISTRY, f"library/{name}"

        if not repository:
            raise ValueError(f"Invalid image reference: '{reference}'")

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest or None)

    @property
    def is_image_id(self) -> bool:
        return self.image_id is not None

    @property
    def name(self) -> str:
        """Repository name as users write it: no default registry, no 'library/', no tag."""
        if self.is_image_id:
            return self.image_id[:12]
        if self.registry == self.DEFAULT_REGISTRY:
            repo = self.repository
            if repo.startswith("library/"):
                repo = repo[len("library/"):]
            return repo
        return f"{self.registry}/{self.repository}"

    @property
    def short_name(self) -> str:
        """Name with its tag or digest."""
        if self.is_image_id:
            return self.image_id
        if self.digest:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag}"

    @property
    def slim_name(self) -> str:
        """Default repository name of the minimized image."""
        if self.is_image_id:
            return f"dslim-{self.name}{self.SLIM_SUFFIX}"
        return f"{self.name}{self.SLIM_SUFFIX}"

    def __str__(self) -> str:
        return self.short_name

    def __repr__(self) -> str:
        return f"ImageReference({self.short_name})"
