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
Unit tests for the build request models.
"""
import os

import pytest
from pydantic import ValidationError

from dslim.MODELS.build_request import (
    IMAGE_OVERRIDE_FLAGS,
    BuildRequest,
    ContainerOverrides,
    HttpProbeCmd,
    VolumeMount,
    parse_image_overrides,
)
from dslim.MODELS.continue_after import EnterMode


class TestContainerOverrides:
    """Tests for ContainerOverrides."""

    def test_ports_are_normalized(self):
        """Test that a bare port defaults to tcp."""
        overrides = ContainerOverrides(exposed_ports=["8080", "53/udp"])
        assert overrides.exposed_ports == ["8080/tcp", "53/udp"]

    @pytest.mark.parametrize("port", ["http", "/tcp", "80a"])
    def test_invalid_port(self, port):
        """Test that non numeric ports are rejected."""
        with pytest.raises(ValidationError):
            ContainerOverrides(exposed_ports=[port])

    @pytest.mark.parametrize("item", ["NOVALUE", "=value"])
    def test_invalid_env(self, item):
        """Test that env overrides need KEY=VALUE."""
        with pytest.raises(ValidationError):
            ContainerOverrides(env=[item])

    def test_empty_env_value(self):
        assert ContainerOverrides(env=["EMPTY="]).env == ["EMPTY="]


class TestVolumeMount:
    """Tests for VolumeMount parsing."""

    def test_parse(self):
        mount = VolumeMount.parse("/host/data:/data:ro")
        assert mount.source == "/host/data"
        assert mount.target == "/data"
        assert mount.read_only
        assert mount.to_docker() == ("/host/data", {"bind": "/data", "mode": "ro"})

    def test_relative_source(self):
        """Test that a relative source is made absolute."""
        mount = VolumeMount.parse("data:/data")
        assert mount.source == os.path.abspath("data")
        assert not mount.read_only

    @pytest.mark.parametrize("spec", ["/data", ":/data", "/a:", "/a:/b:rx", "/a:/b:ro:x"])
    def test_invalid(self, spec):
        with pytest.raises(ValueError):
            VolumeMount.parse(spec)


class TestHttpProbeCmd:
    """Tests for HttpProbeCmd parsing."""

    @pytest.mark.parametrize(
        "spec, protocol, method, resource",
        [
            ("/", "http", "GET", "/"),
            ("health", "http", "GET", "/health"),
            ("post:/api", "http", "POST", "/api"),
            ("https:get:/health", "https", "GET", "/health"),
            (":head:/", "", "HEAD", "/"),
        ],
    )
    def test_parse(self, spec, protocol, method, resource):
        cmd = HttpProbeCmd.parse(spec)
        assert (cmd.protocol, cmd.method, cmd.resource) == (protocol, method, resource)

    def test_unsupported_protocol(self):
        with pytest.raises(ValidationError):
            HttpProbeCmd.parse("ftp:get:/")


class TestImageOverrides:
    """Tests for parse_image_overrides."""

    def test_all(self):
        assert parse_image_overrides("all") == frozenset(IMAGE_OVERRIDE_FLAGS)

    def test_list(self):
        assert parse_image_overrides("cmd, Env,,") == frozenset({"cmd", "env"})

    def test_empty(self):
        assert parse_image_overrides("") == frozenset()

    def test_unknown(self):
        with pytest.raises(ValueError, match="volume"):
            parse_image_overrides("cmd,volume")


class TestBuildRequest:
    """Tests for BuildRequest defaults."""

    def test_defaults(self):
        request = BuildRequest(image_ref="app:1.0", state_path="/tmp/state")
        assert request.continue_after == EnterMode()
        assert not request.do_http_probe
        assert request.image_overrides == frozenset()
        assert request.overrides == ContainerOverrides()

    def test_immutable(self):
        request = BuildRequest(image_ref="app:1.0", state_path="/tmp/state")
        with pytest.raises(AttributeError):
            request.custom_tag = "other"
