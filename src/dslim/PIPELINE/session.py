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
State of one build run, threaded through the phases of the pipeline.
"""
import io
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, TextIO, Tuple

from ..MODELS.build_request import BuildRequest
from ..MODELS.continue_after import ContinueAfter, ContinueAfterMode


class OutcomeStatus(str, Enum):
    """How a successful run ended."""

    BUILT = "built"
    IMAGE_NOT_FOUND = "image-not-found"
    NO_DATA = "no-data"


class PhaseResult(str, Enum):
    """Per-phase entry of the run log."""

    OK = "ok"
    WARNED = "warned"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class BuildOutcome:
    """
    Result of a build run that did not fail.
    """
    status: OutcomeStatus
    image_name: Optional[str] = None
    has_data: bool = False
    phase_log: List[Tuple[str, PhaseResult]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class BuildSession:
    """
    Everything the phases produce and consume during one run.
    Each phase reads what earlier phases stored and adds its own results.
    """
    request: BuildRequest
    collaborators: Any
    stdin: TextIO = field(default_factory=io.StringIO)
    sleep: Optional[Callable[[float], None]] = None

    client: Any = None
    image_inspector: Any = None
    local_volume_path: Optional[str] = None
    artifact_location: Optional[str] = None
    container_inspector: Any = None
    continue_after: Optional[ContinueAfter] = None
    probe: Any = None
    released_by: Optional[ContinueAfterMode] = None
    target_tag: Optional[str] = None
    builder: Any = None

    phase_log: List[Tuple[str, PhaseResult]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def outcome(self, status: OutcomeStatus) -> BuildOutcome:
        return BuildOutcome(
            status=status,
            image_name=self.builder.repo_name if self.builder is not None else None,
            has_data=bool(self.builder.has_data) if self.builder is not None else False,
            phase_log=list(self.phase_log),
            warnings=list(self.warnings),
        )
