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
Docker client configuration and connection.
"""
import logging
import os
from typing import Dict, Optional

import docker
import requests
from docker.errors import DockerException
from docker.tls import TLSConfig
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict

from ..exceptions import DockerConnectError

logger = logging.getLogger(__name__)

DOCKER_ENV_KEYS = ("DOCKER_HOST", "DOCKER_TLS_VERIFY", "DOCKER_CERT_PATH")


class DockerClientConfig(BaseModel):
    """
    Where and how to reach the Docker daemon.
    An empty host means the standard environment and socket defaults are used.
    """
    model_config = ConfigDict(frozen=True)

    host: str = ""
    use_tls: bool = False
    verify_tls: bool = False
    tls_cert_path: str = ""
    env: Dict[str, str] = {}

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **explicit) -> "DockerClientConfig":
        """
        Reads the Docker settings from the process environment, overlaid by an
        optional dotenv file. Explicit non-empty keyword values win over both.

        :param env_file: Path to a .env file.
        :return: The resolved configuration.
        """
        env = {key: os.environ[key] for key in DOCKER_ENV_KEYS if key in os.environ}
        if env_file:
            file_env = dotenv_values(env_file)
            env.update({k: v for k, v in file_env.items() if k in DOCKER_ENV_KEYS and v is not None})

        verify = env.get("DOCKER_TLS_VERIFY", "") not in ("", "0", "false")
        values = {
            "host": env.get("DOCKER_HOST", ""),
            "use_tls": verify,
            "verify_tls": verify,
            "tls_cert_path": env.get("DOCKER_CERT_PATH", ""),
            "env": env,
        }
        values.update({k: v for k, v in explicit.items() if v not in (None, "")})
        return cls(**values)

    def tls_config(self) -> Optional[TLSConfig]:
        if not self.use_tls:
            return None
        if not self.tls_cert_path:
            return TLSConfig(verify=self.verify_tls)
        cert_path = self.tls_cert_path
        return TLSConfig(
            client_cert=(os.path.join(cert_path, "cert.pem"), os.path.join(cert_path, "key.pem")),
            ca_cert=os.path.join(cert_path, "ca.pem") if self.verify_tls else None,
            verify=self.verify_tls,
        )


def new_docker_client(config: DockerClientConfig) -> docker.DockerClient:
    """
    Connects to the Docker daemon and checks that it answers.

    :param config: The client configuration.
    :return: A connected client.
    :raises DockerConnectError: If the daemon cannot be reached.
    """
    try:
        if config.host:
            client = docker.DockerClient(base_url=config.host, tls=config.tls_config() or False)
        else:
            client = docker.from_env()
        client.ping()
    except (DockerException, requests.exceptions.RequestException) as e:
        raise DockerConnectError(f"cannot connect to Docker: {e}") from e

    logger.debug("connected to Docker daemon at %s", config.host or "default socket")
    return client
