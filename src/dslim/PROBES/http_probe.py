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
HTTP probing of the instrumented container.
Runs the probe commands against every published TCP port in a background thread
and fires a done signal once the whole command list has been executed.
"""
import http.client
import logging
import socket
import ssl
import threading
import time
from typing import Iterable, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..exceptions import HttpProbeError
from ..INSPECTORS.container_inspector import ContainerInspector
from ..MODELS.build_request import DEFAULT_HTTP_PROBE_CMD, HttpProbeCmd
from ..MODELS.continue_after import DoneSignal

logger = logging.getLogger(__name__)

DEFAULT_START_DELAY = 9.0
DEFAULT_RETRIES = 3
DEFAULT_RETRY_WAIT = 2.0
DEFAULT_REQUEST_TIMEOUT = 10.0


class HttpProbe:
    """
    Exercises the running container over HTTP.
    """

    def __init__(
        self,
        container_inspector: ContainerInspector,
        cmds: Iterable[HttpProbeCmd],
        start_delay: float = DEFAULT_START_DELAY,
        retries: int = DEFAULT_RETRIES,
        retry_wait: float = DEFAULT_RETRY_WAIT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        """
        Initializes the probe.

        :param container_inspector: Inspector of the running container.
        :param cmds: Probe commands. No commands means a single GET /.
        :param start_delay: Seconds to give the container before the first call.
        :param retries: Attempts per call when the connection fails.
        :param retry_wait: Seconds between attempts.
        :param request_timeout: Socket timeout of one attempt.
        :raises HttpProbeError: If the container publishes no TCP port.
        """
        self.ports = container_inspector.published_ports()
        if not self.ports:
            raise HttpProbeError("the container publishes no TCP ports to probe")

        self.host = container_inspector.target_host
        self.cmds: List[HttpProbeCmd] = list(cmds) or [DEFAULT_HTTP_PROBE_CMD]
        self.start_delay = start_delay
        self.retries = max(1, retries)
        self.retry_wait = retry_wait
        self.request_timeout = request_timeout

        self.call_count = 0
        self.ok_count = 0
        self.error_count = 0

        self._done = DoneSignal()
        self._thread: Optional[threading.Thread] = None

        self._ssl_context = ssl.create_default_context()
        self._ssl_context.check_hostname = False
        self._ssl_context.verify_mode = ssl.CERT_NONE

    def start(self) -> None:
        """
        Starts the probe thread. The done signal fires when it finishes.
        """
        if self._thread is not None:
            raise HttpProbeError("the probe has already been started")
        self._thread = threading.Thread(target=self._run, name="dslim-http-probe", daemon=True)
        self._thread.start()

    def done_signal(self) -> DoneSignal:
        return self._done

    def _run(self):
        try:
            if self.start_delay > 0:
                time.sleep(self.start_delay)

            for container_port, host_port in self.ports:
                logger.info("dslim: HTTP probe - port %s (host port %d)", container_port, host_port)
                for cmd in self.cmds:
                    protocols = [cmd.protocol] if cmd.protocol else ["http", "https"]
                    for protocol in protocols:
                        self._probe(cmd.method, f"{protocol}://{self.host}:{host_port}{cmd.resource}")

            logger.info(
                "dslim: HTTP probe - %d calls, %d ok, %d failed",
                self.call_count, self.ok_count, self.error_count,
            )
        finally:
            self._done.fire()

    def _probe(self, method: str, url: str) -> None:
        self.call_count += 1
        retrying = Retrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_fixed(self.retry_wait),
            retry=retry_if_exception_type((URLError, ConnectionError, socket.timeout)),
            reraise=True,
        )
        try:
            status = retrying(self._request, method, url)
        except (URLError, OSError, http.client.HTTPException) as e:
            self.error_count += 1
            logger.warning("dslim: HTTP probe - %s %s failed: %s", method, url, e)
            return

        if status < 400:
            self.ok_count += 1
        logger.info("dslim: HTTP probe - %s %s => %d", method, url, status)

    def _request(self, method: str, url: str) -> int:
        request = Request(url, method=method)
        context = self._ssl_context if url.startswith("https:") else None
        try:
            with urlopen(request, timeout=self.request_timeout, context=context) as response:
                response.read()
                return response.status
        except HTTPError as e:
            # The server answered
            return e.code
