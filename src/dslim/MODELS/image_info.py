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
Models representing the inspected "fat" image.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel


class HistoryEntry(BaseModel):
    """
    One layer record from the image history, newest first as Docker reports it.
    """
    id: str = ""
    created_by: str = ""


class ImageInfo(BaseModel):
    """
    Metadata of a source image, translated from the Docker inspect output.
    """
    id: str
    repo_tags: List[str] = []
    virtual_size: int = 0
    created: Optional[str] = None

    entrypoint: List[str] = []
    cmd: List[str] = []
    working_dir: str = ""
    env: List[str] = []
    exposed_ports: List[str] = []
    user: str = ""
    labels: Dict[str, str] = {}

    history: List[HistoryEntry] = []

    @property
    def short_id(self) -> str:
        """ID without the digest algorithm prefix, truncated to 12 characters."""
        return self.hex_id[:12]

    @property
    def hex_id(self) -> str:
        return self.id.split(":", 1)[-1]

    @classmethod
    def from_attrs(cls, attrs: Dict, history: Optional[List[Dict]] = None) -> "ImageInfo":
        """
        Builds an ImageInfo from the raw ``attrs`` of a docker-py Image.

        :param attrs: The image inspect payload.
        :param history: The payload of the image history call.
        """
        config = attrs.get("Config") or {}
        return cls(
            id=attrs["Id"],
            repo_tags=attrs.get("RepoTags") or [],
            virtual_size=attrs.get("VirtualSize") or attrs.get("Size") or 0,
            created=attrs.get("Created"),
            entrypoint=config.get("Entrypoint") or [],
            cmd=config.get("Cmd") or [],
            working_dir=config.get("WorkingDir") or "",
            env=config.get("Env") or [],
            exposed_ports=sorted((config.get("ExposedPorts") or {}).keys()),
            user=config.get("User") or "",
            labels=config.get("Labels") or {},
            history=[
                HistoryEntry(
                    id=entry.get("Id") or "",
                    created_by=entry.get("CreatedBy") or "",
                )
                for entry in (history or [])
            ],
        )
