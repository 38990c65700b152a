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
Run-scoped storage: the local volume path and the artifact location of a build.
"""
import os
import shutil
from pathlib import Path
from typing import Tuple

from ..exceptions import StorageError

IMAGES_DIR = ".images"
ARTIFACTS_DIR = "artifacts"
FILES_DIR = "files"


def default_state_path() -> str:
    """
    State directory used when none is given: ~/.dslim
    """
    return str(Path.home() / ".dslim")


def prepare_run_directories(state_path: str, image_id: str) -> Tuple[str, str]:
    """
    Creates the per-image run directories under the state directory.
    Artifacts left by an earlier run of the same image are removed first.

    :param state_path: Root state directory.
    :param image_id: ID of the inspected image, with or without its 'sha256:' prefix.
    :return: The local volume path and the artifact location inside it.
    :raises StorageError: If the directories cannot be created or written.
    """
    if not image_id:
        raise StorageError("cannot prepare run directories without an image ID")

    hex_id = image_id.split(":", 1)[-1]
    local_volume_path = os.path.abspath(os.path.join(state_path, IMAGES_DIR, hex_id))
    artifact_location = os.path.join(local_volume_path, ARTIFACTS_DIR)

    try:
        if os.path.isdir(artifact_location):
            shutil.rmtree(artifact_location)
        os.makedirs(artifact_location, exist_ok=True)
    except OSError as e:
        raise StorageError(f"cannot prepare artifact location {artifact_location}: {e}") from e

    if not os.access(artifact_location, os.W_OK):
        raise StorageError(f"artifact location is not writable: {artifact_location}")

    return local_volume_path, artifact_location


def remove_artifacts(artifact_location: str) -> None:
    """
    Removes the artifact location with everything in it.

    The whole tree goes, including the reports and the generated Dockerfile,
    not only the exported files.

    :raises StorageError: If the tree cannot be removed.
    """
    if not os.path.exists(artifact_location):
        return
    try:
        shutil.rmtree(artifact_location)
    except OSError as e:
        raise StorageError(f"cannot remove artifacts at {artifact_location}: {e}") from e


def files_location(artifact_location: str) -> str:
    return os.path.join(artifact_location, FILES_DIR)


def format_size(size_bytes: float) -> str:
    """Format a size in bytes to human readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1000:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1000
    return f"{size_bytes:.1f} PB"
