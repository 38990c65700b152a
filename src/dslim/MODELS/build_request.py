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
Models for a single build invocation: container overrides, mounts, probe commands
and the immutable BuildRequest that bundles them.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

from ..CONFIG.docker_client import DockerClientConfig
from .continue_after import ContinueAfter, EnterMode

IMAGE_OVERRIDE_FLAGS = ("entrypoint", "cmd", "workdir", "env", "expose")


class ContainerOverrides(BaseModel):
    """
    Overrides applied to the instrumented container, and optionally to the
    minimized image. Entrypoint and cmd can be replaced or cleared independently.
    """
    model_config = ConfigDict(frozen=True)

    entrypoint: List[str] = []
    clear_entrypoint: bool = False
    cmd: List[str] = []
    clear_cmd: bool = False
    workdir: str = ""
    env: List[str] = []
    exposed_ports: List[str] = []

    @field_validator("env")
    @classmethod
    def _check_env(cls, value: List[str]) -> List[str]:
        for item in value:
            if "=" not in item or item.startswith("="):
                raise ValueError(f"environment override must look like KEY=VALUE: '{item}'")
        return value

    @field_validator("exposed_ports")
    @classmethod
    def _normalize_ports(cls, value: List[str]) -> List[str]:
        ports = []
        for item in value:
            port, _, proto = item.partition("/")
            if not port.isdigit():
                raise ValueError(f"invalid exposed port: '{item}'")
            ports.append(f"{int(port)}/{proto or 'tcp'}")
        return ports


class VolumeMount(BaseModel):
    """
    Defines a mapping between a host path and a path in the instrumented container.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    read_only: bool = False

    @classmethod
    def parse(cls, spec: str) -> "VolumeMount":
        """
        Parses 'source:target[:ro|rw]'.
        """
        parts = spec.split(":")
        if len(parts) not in (2, 3) or not parts[0] or not parts[1]:
            raise ValueError(f"invalid mount: '{spec}'")
        read_only = False
        if len(parts) == 3:
            if parts[2] not in ("ro", "rw"):
                raise ValueError(f"invalid mount mode in '{spec}'")
            read_only = parts[2] == "ro"
        return cls(source=os.path.abspath(parts[0]), target=parts[1], read_only=read_only)

    def to_docker(self) -> Tuple[str, Dict[str, str]]:
        return self.source, {"bind": self.target, "mode": "ro" if self.read_only else "rw"}


class HttpProbeCmd(BaseModel):
    """
    One HTTP call made by the probe against every published port.
    An empty protocol means both http and https are tried.
    """
    model_config = ConfigDict(frozen=True)

    protocol: str = "http"
    method: str = "GET"
    resource: str = "/"

    @field_validator("protocol")
    @classmethod
    def _check_protocol(cls, value: str) -> str:
        value = value.lower()
        if value not in ("", "http", "https"):
            raise ValueError(f"unsupported probe protocol: '{value}'")
        return value

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()

    @field_validator("resource")
    @classmethod
    def _absolute_resource(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @classmethod
    def parse(cls, spec: str) -> "HttpProbeCmd":
        """
        Parses '[[protocol:]method:]resource'.

        Examples:
            - / -> GET / over http
            - post:/api -> POST /api over http
            - https:get:/health -> GET /health over https
        """
        parts = spec.split(":", 2)
        if len(parts) == 1:
            return cls(resource=parts[0] or "/")
        if len(parts) == 2:
            return cls(method=parts[0] or "GET", resource=parts[1] or "/")
        return cls(protocol=parts[0], method=parts[1] or "GET", resource=parts[2] or "/")


DEFAULT_HTTP_PROBE_CMD = HttpProbeCmd()


@dataclass(frozen=True)
class BuildRequest:
    """
    Everything one build run needs. Created once per invocation and never mutated.
    """
    image_ref: str
    state_path: str
    custom_tag: str = ""
    debug: bool = False
    docker_client: DockerClientConfig = field(default_factory=DockerClientConfig)
    overrides: ContainerOverrides = field(default_factory=ContainerOverrides)
    image_overrides: FrozenSet[str] = frozenset()
    volume_mounts: Dict[str, VolumeMount] = field(default_factory=dict)
    exclude_paths: FrozenSet[str] = frozenset()
    include_paths: FrozenSet[str] = frozenset()
    do_http_probe: bool = False
    http_probe_cmds: Tuple[HttpProbeCmd, ...] = ()
    remove_file_artifacts: bool = False
    show_container_logs: bool = False
    continue_after: ContinueAfter = field(default_factory=EnterMode)


def parse_image_overrides(value: str) -> FrozenSet[str]:
    """
    Parses a comma separated list of image-override flags. 'all' selects every flag.
    """
    flags = {item.strip().lower() for item in value.split(",") if item.strip()}
    if "all" in flags:
        return frozenset(IMAGE_OVERRIDE_FLAGS)
    unknown = flags.difference(IMAGE_OVERRIDE_FLAGS)
    if unknown:
        raise ValueError(f"unknown image overrides: {', '.join(sorted(unknown))}")
    return frozenset(flags)
