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
The build phases, in order, each with its failure severity.

A phase action takes the session and returns None to go on, or an
OutcomeStatus to end the run successfully at that point.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

from .. import __version__
from ..UTILS.fsutil import format_size
from .session import BuildSession, OutcomeStatus
from .waiter import arm_continue_after, wait_for_continue

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """What a failing phase does to the run."""

    FATAL = "fatal"  # abort, nothing else runs
    WARN = "warn"  # log and go on


@dataclass(frozen=True)
class Phase:
    name: str
    action: Callable[[BuildSession], Optional[OutcomeStatus]]
    severity: Severity = Severity.FATAL


def connect(session: BuildSession) -> None:
    session.client = session.collaborators.connect(session.request.docker_client)


def resolve_image(session: BuildSession) -> Optional[OutcomeStatus]:
    request = session.request
    session.image_inspector = session.collaborators.image_inspector(session.client, request.image_ref)
    if not session.image_inspector.image_exists():
        print(f"dslim: [build] target image not found - {request.image_ref}")
        return OutcomeStatus.IMAGE_NOT_FOUND
    return None


def inspect_image(session: BuildSession) -> None:
    logger.info("dslim: inspecting 'fat' image metadata...")
    session.image_inspector.inspect()


def prepare_storage(session: BuildSession) -> None:
    image_info = session.image_inspector.image_info
    session.local_volume_path, session.artifact_location = session.collaborators.prepare_run_directories(
        session.request.state_path, image_info.id
    )
    session.image_inspector.artifact_location = session.artifact_location

    logger.info(
        "dslim: [%s] 'fat' image size => %d (%s)",
        image_info.short_id, image_info.virtual_size, format_size(image_info.virtual_size),
    )


def process_image_data(session: BuildSession) -> None:
    logger.info("dslim: processing 'fat' image info...")
    session.image_inspector.process_collected_data()


def launch_container(session: BuildSession) -> None:
    request = session.request
    session.container_inspector = session.collaborators.container_inspector(
        session.client,
        session.image_inspector,
        session.local_volume_path,
        request.overrides,
        request.show_container_logs,
        request.volume_mounts,
        request.exclude_paths,
        request.include_paths,
        request.debug,
    )
    logger.info("dslim: starting instrumented 'fat' container...")
    session.container_inspector.run_container()


def arm_continue(session: BuildSession) -> None:
    logger.info("dslim: watching container monitor...")

    def start_probe():
        session.probe = session.collaborators.http_probe(
            session.container_inspector, session.request.http_probe_cmds
        )
        session.probe.start()
        return session.probe.done_signal()

    session.continue_after = arm_continue_after(
        session.request.continue_after, session.request.do_http_probe, start_probe
    )


def wait_continue(session: BuildSession) -> None:
    session.released_by = wait_for_continue(session.continue_after, session.stdin, session.sleep)


def finish_monitoring(session: BuildSession) -> None:
    session.container_inspector.finish_monitoring()


def shutdown_container(session: BuildSession) -> None:
    logger.info("dslim: shutting down 'fat' container...")
    session.container_inspector.shutdown_container()


def check_collected_data(session: BuildSession) -> Optional[OutcomeStatus]:
    if session.container_inspector.has_collected_data():
        return None
    session.image_inspector.show_fat_image_docker_instructions()
    print(f"dslim: [build] no data collected (no minified image generated) - done. (version: {__version__})")
    return OutcomeStatus.NO_DATA


def process_container_data(session: BuildSession) -> None:
    logger.info("dslim: processing instrumented 'fat' container info...")
    session.container_inspector.process_collected_data()


def resolve_target_tag(session: BuildSession) -> None:
    session.target_tag = session.request.custom_tag or session.image_inspector.slim_image_repo


def build_image(session: BuildSession) -> None:
    request = session.request
    logger.info("dslim: building 'slim' image...")
    session.builder = session.collaborators.image_builder(
        session.client,
        session.target_tag,
        session.image_inspector.image_info,
        session.artifact_location,
        request.image_overrides,
        request.overrides,
    )
    if not session.builder.has_data:
        logger.warning("dslim: WARNING - no data artifacts")

    session.builder.build()
    logger.info(
        "dslim: created new image: %s (has data artifacts: %s)",
        session.builder.repo_name, session.builder.has_data,
    )


def cleanup(session: BuildSession) -> None:
    if not session.request.remove_file_artifacts:
        return
    logger.info("dslim: removing temporary artifacts...")
    # Removes the whole artifact tree, not only the exported files
    session.collaborators.remove_artifacts(session.artifact_location)


def report(session: BuildSession) -> OutcomeStatus:
    print(
        f"dslim: [build] done. image={session.builder.repo_name} "
        f"has-data={str(session.builder.has_data).lower()}"
    )
    return OutcomeStatus.BUILT


BUILD_PHASES: Tuple[Phase, ...] = (
    Phase("connect", connect),
    Phase("resolve-image", resolve_image),
    Phase("inspect-image", inspect_image),
    Phase("prepare-storage", prepare_storage),
    Phase("process-image-data", process_image_data),
    Phase("launch-container", launch_container),
    Phase("arm-continue-after", arm_continue),
    Phase("wait", wait_continue),
    Phase("finish-monitoring", finish_monitoring),
    Phase("shutdown-container", shutdown_container, Severity.WARN),
    Phase("check-collected-data", check_collected_data),
    Phase("process-container-data", process_container_data),
    Phase("resolve-target-tag", resolve_target_tag),
    Phase("build-image", build_image),
    Phase("cleanup", cleanup, Severity.WARN),
    Phase("report", report),
)
