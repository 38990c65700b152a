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
Exception hierarchy shared by the collaborators and the build pipeline.
"""
from typing import Optional

__all__ = [
    "DslimError",
    "DockerConnectError",
    "ImageInspectorError",
    "ContainerInspectorError",
    "HttpProbeError",
    "ImageBuilderError",
    "StorageError",
    "ContinueAfterError",
    "BuildFailure",
]


class DslimError(Exception):
    """Base class for every error raised by dslim."""


class DockerConnectError(DslimError):
    """The Docker daemon could not be reached."""


class ImageInspectorError(DslimError):
    pass


class ContainerInspectorError(DslimError):
    pass


class HttpProbeError(DslimError):
    pass


class ImageBuilderError(DslimError):
    pass


class StorageError(DslimError):
    """A run directory could not be created or removed."""


class ContinueAfterError(DslimError, ValueError):
    """Invalid continue-after directive. Reported as a usage error."""


class BuildFailure(DslimError):
    """
    A fatal phase failed and the build run was aborted.

    The underlying exception is chained as ``__cause__`` and kept in ``cause``.
    """

    def __init__(self, phase: str, cause: Optional[BaseException] = None):
        self.phase = phase
        self.cause = cause
        message = f"build failed in phase '{phase}'"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
