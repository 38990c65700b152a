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
Unit tests for the Docker client configuration.
"""
from unittest import mock

import pytest
from docker.errors import DockerException

from dslim.CONFIG import docker_client
from dslim.CONFIG.docker_client import DockerClientConfig, new_docker_client
from dslim.exceptions import DockerConnectError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in docker_client.DOCKER_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestDockerClientConfig:
    """Tests for DockerClientConfig.from_env."""

    def test_defaults(self):
        config = DockerClientConfig.from_env()
        assert config.host == ""
        assert not config.use_tls
        assert config.tls_config() is None

    def test_process_environment(self, monkeypatch):
        monkeypatch.setenv("DOCKER_HOST", "tcp://docker:2376")
        monkeypatch.setenv("DOCKER_TLS_VERIFY", "1")
        monkeypatch.setenv("DOCKER_CERT_PATH", "/certs")
        config = DockerClientConfig.from_env()
        assert config.host == "tcp://docker:2376"
        assert config.use_tls and config.verify_tls
        assert config.tls_cert_path == "/certs"

    def test_env_file_overrides_environment(self, monkeypatch, tmp_path):
        """Test that the dotenv file wins over the process environment."""
        monkeypatch.setenv("DOCKER_HOST", "tcp://from-env:2375")
        env_file = tmp_path / "docker.env"
        env_file.write_text("DOCKER_HOST=tcp://from-file:2375\nUNRELATED=1\n")
        config = DockerClientConfig.from_env(str(env_file))
        assert config.host == "tcp://from-file:2375"
        assert "UNRELATED" not in config.env

    def test_explicit_values_win(self, monkeypatch):
        """Test that explicit values win and empty ones are ignored."""
        monkeypatch.setenv("DOCKER_HOST", "tcp://from-env:2375")
        assert DockerClientConfig.from_env(host="unix:///run/docker.sock").host == "unix:///run/docker.sock"
        assert DockerClientConfig.from_env(host="").host == "tcp://from-env:2375"
        assert DockerClientConfig.from_env(host=None).host == "tcp://from-env:2375"

    def test_tls_config_with_certs(self):
        config = DockerClientConfig(host="tcp://docker:2376", use_tls=True, verify_tls=True, tls_cert_path="/certs")
        with mock.patch.object(docker_client, "TLSConfig") as tls:
            config.tls_config()
        tls.assert_called_once_with(
            client_cert=("/certs/cert.pem", "/certs/key.pem"), ca_cert="/certs/ca.pem", verify=True
        )


class TestNewDockerClient:
    """Tests for new_docker_client."""

    def test_default_environment(self):
        with mock.patch.object(docker_client.docker, "from_env") as from_env:
            client = new_docker_client(DockerClientConfig())
        assert client is from_env.return_value
        client.ping.assert_called_once_with()

    def test_explicit_host(self):
        with mock.patch.object(docker_client.docker, "DockerClient") as docker_cls:
            new_docker_client(DockerClientConfig(host="tcp://docker:2375"))
        docker_cls.assert_called_once_with(base_url="tcp://docker:2375", tls=False)

    def test_unreachable_daemon(self):
        with mock.patch.object(docker_client.docker, "from_env") as from_env:
            from_env.return_value.ping.side_effect = DockerException("connection refused")
            with pytest.raises(DockerConnectError):
                new_docker_client(DockerClientConfig())
