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
Unit tests for the minimized image builder.
"""
import os
from unittest import mock

import pytest
from docker.errors import APIError, BuildError

from dslim.BUILDERS.image_builder import ImageBuilder
from dslim.exceptions import ImageBuilderError
from dslim.MODELS.build_request import ContainerOverrides
from dslim.MODELS.image_info import ImageInfo

IMAGE_INFO = ImageInfo(
    id="sha256:" + "ab" * 32,
    repo_tags=["web:1.0"],
    entrypoint=["/entrypoint.sh"],
    cmd=["nginx", "-g", "daemon off;"],
    working_dir="/srv",
    env=["PATH=/usr/bin", "MODE=prod"],
    exposed_ports=["80/tcp"],
    user="www",
    labels={"org.opencontainers.image.title": "web", "maintainer": "ops team"},
)


@pytest.fixture
def artifacts(tmp_path):
    location = tmp_path / "artifacts"
    (location / "files" / "usr" / "bin").mkdir(parents=True)
    (location / "files" / "usr" / "bin" / "nginx").write_bytes(b"\x7fELF")
    return str(location)


def make_builder(artifacts, image_overrides=(), overrides=None, client=None):
    client = client or mock.MagicMock()
    client.images.build.return_value = (mock.MagicMock(), iter([{"stream": "Step 1/2\n"}]))
    return ImageBuilder(
        client, "web.slim", IMAGE_INFO, artifacts, frozenset(image_overrides), overrides or ContainerOverrides()
    )


class TestImageBuilder:
    """Tests for ImageBuilder."""

    def test_requires_tag(self, artifacts):
        """Test that an empty tag is refused."""
        with pytest.raises(ImageBuilderError):
            ImageBuilder(mock.MagicMock(), "", IMAGE_INFO, artifacts, frozenset(), ContainerOverrides())

    def test_requires_artifact_location(self, tmp_path):
        """Test that a missing artifact location is refused."""
        with pytest.raises(ImageBuilderError):
            ImageBuilder(
                mock.MagicMock(), "web.slim", IMAGE_INFO, str(tmp_path / "nope"), frozenset(), ContainerOverrides()
            )

    def test_has_data(self, artifacts, tmp_path):
        """Test that has_data reflects the exported files."""
        assert make_builder(artifacts).has_data

        empty = tmp_path / "empty"
        empty.mkdir()
        assert not make_builder(str(empty)).has_data

    def test_render_keeps_source_metadata(self, artifacts):
        """Test that the source image metadata is carried over."""
        dockerfile = make_builder(artifacts).render_dockerfile()
        lines = dockerfile.splitlines()
        assert lines[0] == "FROM scratch"
        assert lines[1] == "COPY files /"
        assert 'ENV PATH="/usr/bin"' in lines
        assert 'ENV MODE="prod"' in lines
        assert "WORKDIR /srv" in lines
        assert "USER www" in lines
        assert "EXPOSE 80/tcp" in lines
        assert 'ENTRYPOINT ["/entrypoint.sh"]' in lines
        assert 'CMD ["nginx", "-g", "daemon off;"]' in lines
        assert 'LABEL "maintainer"="ops team"' in lines
        assert 'LABEL "org.opencontainers.image.title"="web"' in lines

    def test_overrides_ignored_without_flags(self, artifacts):
        """Test that container overrides do not leak into the image unless flagged."""
        overrides = ContainerOverrides(cmd=["sleep", "1"], workdir="/tmp")
        dockerfile = make_builder(artifacts, overrides=overrides).render_dockerfile()
        assert "WORKDIR /srv" in dockerfile
        assert "sleep" not in dockerfile

    def test_flagged_overrides(self, artifacts):
        """Test that flagged overrides replace the source metadata."""
        overrides = ContainerOverrides(
            cmd=["serve"], workdir="/app", env=["MODE=slim", "EXTRA=1"], exposed_ports=["8080"]
        )
        builder = make_builder(artifacts, ("cmd", "workdir", "env", "expose"), overrides)
        lines = builder.render_dockerfile().splitlines()
        assert 'CMD ["serve"]' in lines
        assert 'ENTRYPOINT ["/entrypoint.sh"]' in lines
        assert "WORKDIR /app" in lines
        assert 'ENV MODE="slim"' in lines
        assert 'ENV MODE="prod"' not in lines
        assert 'ENV EXTRA="1"' in lines
        assert "EXPOSE 8080/tcp" in lines
        assert "EXPOSE 80/tcp" in lines

    def test_cleared_entrypoint(self, artifacts):
        """Test that a cleared entrypoint is written as an empty list."""
        overrides = ContainerOverrides(clear_entrypoint=True)
        lines = make_builder(artifacts, ("entrypoint",), overrides).render_dockerfile().splitlines()
        assert "ENTRYPOINT []" in lines

    def test_build(self, artifacts):
        """Test that the Dockerfile is written and Docker builds the artifact location."""
        builder = make_builder(artifacts)
        builder.build()

        assert os.path.isfile(os.path.join(artifacts, "Dockerfile"))
        builder.client.images.build.assert_called_once_with(
            path=artifacts, dockerfile="Dockerfile", tag="web.slim", rm=True, forcerm=True
        )

    def test_build_without_files(self, tmp_path):
        """Test that an empty artifact location still builds."""
        location = tmp_path / "artifacts"
        location.mkdir()
        builder = make_builder(str(location))
        builder.build()
        assert (location / "files").is_dir()

    @pytest.mark.parametrize("error", [BuildError("step failed", []), APIError("daemon gone")])
    def test_build_failure(self, artifacts, error):
        """Test that Docker build errors are wrapped."""
        builder = make_builder(artifacts)
        builder.client.images.build.side_effect = error
        with pytest.raises(ImageBuilderError):
            builder.build()
