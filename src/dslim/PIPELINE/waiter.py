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
Arming and waiting on the continue-after directive.
"""
import time
from typing import Callable, Optional, TextIO

from ..exceptions import ContinueAfterError
from ..MODELS.continue_after import (
    ContinueAfter,
    ContinueAfterMode,
    DoneSignal,
    EnterMode,
    ProbeMode,
    SignalMode,
    TimeoutMode,
    resolve_continue_after,
)

_VARIANTS = (EnterMode, SignalMode, TimeoutMode, ProbeMode)


def arm_continue_after(
    continue_after: ContinueAfter,
    do_http_probe: bool,
    start_probe: Callable[[], DoneSignal],
) -> ContinueAfter:
    """
    Picks the wait mechanism of the run.

    Requesting HTTP probing forces the probe mode. In probe mode the probe is
    started here, before any wait begins, and its done signal is attached.

    :param continue_after: The requested directive.
    :param do_http_probe: Whether HTTP probing was requested.
    :param start_probe: Creates and starts the probe, returning its done signal.
    :return: The directive to wait on.
    :raises ContinueAfterError: If the directive is not one of the known modes.
    """
    if not isinstance(continue_after, _VARIANTS):
        raise ContinueAfterError(f"unknown continue-after mode: {continue_after!r}")

    continue_after = resolve_continue_after(continue_after, do_http_probe)
    if isinstance(continue_after, ProbeMode):
        return continue_after.armed(start_probe())
    return continue_after


def wait_for_continue(
    continue_after: ContinueAfter,
    stdin: TextIO,
    sleep: Optional[Callable[[float], None]] = None,
) -> ContinueAfterMode:
    """
    Blocks until the armed directive releases.

    Only the timeout mode is bounded. The other modes wait for input or a signal
    without limit.

    :param continue_after: The armed directive.
    :param stdin: Stream read in enter mode.
    :param sleep: Sleep function used in timeout mode, time.sleep by default.
    :return: The mode that released the wait.
    """
    if isinstance(continue_after, EnterMode):
        print("dslim: press <enter> when you are done using the container...")
        stdin.readline()
    elif isinstance(continue_after, SignalMode):
        print("dslim: send SIGUSR1 when you are done using the container...")
        continue_after.done.wait()
        print("dslim: got SIGUSR1...")
    elif isinstance(continue_after, TimeoutMode):
        print(f"dslim: waiting for the target container ({continue_after.timeout:g} seconds)...")
        (sleep or time.sleep)(continue_after.timeout)
        print("dslim: done waiting for the target container...")
    elif isinstance(continue_after, ProbeMode):
        if continue_after.done is None:
            raise ContinueAfterError("probe mode is not armed: no probe was started")
        print("dslim: waiting for the HTTP probe to finish...")
        continue_after.done.wait()
        print("dslim: HTTP probe is done...")
    else:
        raise ContinueAfterError(f"unknown continue-after mode: {continue_after!r}")

    return continue_after.mode
