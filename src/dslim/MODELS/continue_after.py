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
The continue-after directive: how the build decides the observation window is over.

The directive is a closed set of four variants. Each variant carries only what its
wait strategy needs, and anything else is rejected when the directive is built.
"""
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Union

from ..exceptions import ContinueAfterError

DEFAULT_TIMEOUT = 60.0


class ContinueAfterMode(str, Enum):
    """Wait strategies for the observation phase."""

    ENTER = "enter"
    SIGNAL = "signal"
    TIMEOUT = "timeout"
    PROBE = "probe"


class DoneSignal:
    """
    One-shot completion signal with a single producer and a single consumer.

    Firing twice is harmless. Never firing leaves the consumer blocked forever
    unless it waits with a timeout.
    """

    def __init__(self):
        self._event = threading.Event()

    def fire(self) -> None:
        self._event.set()

    def is_fired(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until the signal fires.

        :param timeout: Seconds to wait, or None to wait without bound.
        :return: True if the signal fired.
        """
        return self._event.wait(timeout)


@dataclass(frozen=True)
class EnterMode:
    """Wait for a line on the interactive input stream."""

    mode = ContinueAfterMode.ENTER


@dataclass(frozen=True)
class SignalMode:
    """Wait for an external signal handler to fire ``done``."""

    done: DoneSignal = field(default_factory=DoneSignal)
    mode = ContinueAfterMode.SIGNAL


@dataclass(frozen=True)
class TimeoutMode:
    """Wait a fixed number of seconds."""

    timeout: float = DEFAULT_TIMEOUT
    mode = ContinueAfterMode.TIMEOUT

    def __post_init__(self):
        if not 0 <= self.timeout < float("inf"):
            raise ContinueAfterError(f"invalid continue-after timeout: {self.timeout}")


@dataclass(frozen=True)
class ProbeMode:
    """
    Wait for the HTTP probe to finish.

    ``done`` stays None until the probe is started and hands over its signal.
    """

    done: Optional[DoneSignal] = None
    mode = ContinueAfterMode.PROBE

    def armed(self, done: DoneSignal) -> "ProbeMode":
        return replace(self, done=done)


ContinueAfter = Union[EnterMode, SignalMode, TimeoutMode, ProbeMode]


def continue_after_from(value: str, timeout: float = DEFAULT_TIMEOUT) -> ContinueAfter:
    """
    Builds a continue-after directive from its command line form.

    A bare number selects the timeout mode with that many seconds.

    :param value: One of 'enter', 'signal', 'timeout', 'probe' or a number of seconds.
    :param timeout: Seconds used by the 'timeout' mode.
    :return: The matching directive.
    :raises ContinueAfterError: If the value names no known mode.
    """
    if value is None:
        raise ContinueAfterError("missing continue-after mode")

    value = value.strip().lower()
    try:
        mode = ContinueAfterMode(value)
    except ValueError:
        try:
            seconds = float(value)
        except ValueError:
            raise ContinueAfterError(f"unknown continue-after mode: '{value}'") from None
        return TimeoutMode(timeout=seconds)

    if mode == ContinueAfterMode.ENTER:
        return EnterMode()
    if mode == ContinueAfterMode.SIGNAL:
        return SignalMode()
    if mode == ContinueAfterMode.TIMEOUT:
        return TimeoutMode(timeout=timeout)
    return ProbeMode()


def resolve_continue_after(continue_after: ContinueAfter, do_http_probe: bool) -> ContinueAfter:
    """
    Applies the probing policy: requesting HTTP probing replaces any other mode.
    """
    if do_http_probe and not isinstance(continue_after, ProbeMode):
        return ProbeMode()
    return continue_after
