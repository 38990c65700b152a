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
Build pipeline orchestration: runs the phases in order and applies the
severity of each phase to its failures.
"""
import logging
import sys
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, TextIO

from ..BUILDERS.image_builder import ImageBuilder
from ..CONFIG.docker_client import new_docker_client
from ..exceptions import BuildFailure, ContinueAfterError, DslimError
from ..INSPECTORS.container_inspector import ContainerInspector
from ..INSPECTORS.image_inspector import ImageInspector
from ..MODELS.build_request import BuildRequest
from ..PROBES.http_probe import HttpProbe
from ..UTILS.fsutil import prepare_run_directories, remove_artifacts
from .phases import BUILD_PHASES, Phase, Severity
from .session import BuildOutcome, BuildSession, PhaseResult

logger = logging.getLogger(__name__)


@dataclass
class Collaborators:
    """
    Factories and utilities the phases call. Defaults talk to Docker.
    """
    connect: Callable = new_docker_client
    image_inspector: Callable = ImageInspector
    container_inspector: Callable = ContainerInspector
    http_probe: Callable = HttpProbe
    image_builder: Callable = ImageBuilder
    prepare_run_directories: Callable = prepare_run_directories
    remove_artifacts: Callable = remove_artifacts


class BuildPipeline:
    """
    Turns a "fat" image into a minimized one, one phase at a time.
    Every phase runs at most once per run and none is retried.
    """

    def __init__(
        self,
        request: BuildRequest,
        collaborators: Optional[Collaborators] = None,
        stdin: Optional[TextIO] = None,
        sleep: Optional[Callable[[float], None]] = None,
        phases: Sequence[Phase] = BUILD_PHASES,
    ):
        """
        Initializes the pipeline.

        :param request: The build request.
        :param collaborators: Factories for the Docker facing components.
        :param stdin: Stream read by the 'enter' wait, sys.stdin by default.
        :param sleep: Sleep function of the 'timeout' wait, time.sleep by default.
        :param phases: The phase table.
        """
        self.request = request
        self.collaborators = collaborators or Collaborators()
        self.stdin = stdin
        self.sleep = sleep
        self.phases = tuple(phases)

    def new_session(self) -> BuildSession:
        return BuildSession(
            request=self.request,
            collaborators=self.collaborators,
            stdin=self.stdin or sys.stdin,
            sleep=self.sleep,
        )

    def run(self) -> BuildOutcome:
        """
        Runs the phases until one ends the run.

        :return: The outcome of a run that did not fail.
        :raises BuildFailure: If a fatal phase fails.
        :raises ContinueAfterError: If the continue-after directive is invalid.
        """
        self._print_request()
        session = self.new_session()

        for phase in self.phases:
            logger.debug("phase %s", phase.name)
            try:
                status = phase.action(session)
            except ContinueAfterError:
                session.phase_log.append((phase.name, PhaseResult.FAILED))
                raise
            except DslimError as e:
                if phase.severity == Severity.WARN:
                    logger.warning("dslim: %s failed: %s", phase.name, e)
                    session.warnings.append(f"{phase.name}: {e}")
                    session.phase_log.append((phase.name, PhaseResult.WARNED))
                    continue
                session.phase_log.append((phase.name, PhaseResult.FAILED))
                logger.error("dslim: %s failed: %s", phase.name, e)
                raise BuildFailure(phase.name, e) from e

            if status is not None:
                session.phase_log.append((phase.name, PhaseResult.STOPPED))
                return session.outcome(status)
            session.phase_log.append((phase.name, PhaseResult.OK))

        raise BuildFailure("report", DslimError("the phase table ended without an outcome"))

    def _print_request(self):
        request = self.request
        overrides = request.overrides
        print(
            f"dslim: [build] image={request.image_ref} http-probe={request.do_http_probe} "
            f"remove-file-artifacts={request.remove_file_artifacts} "
            f"image-overrides={sorted(request.image_overrides)} "
            f"entrypoint={overrides.entrypoint} ({overrides.clear_entrypoint}) "
            f"cmd={overrides.cmd} ({overrides.clear_cmd}) workdir='{overrides.workdir}' "
            f"env={overrides.env} expose={overrides.exposed_ports}"
        )
