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
Unit tests for the HTTP probe, run against a local HTTP server.
"""
import socket
import socketserver
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from types import SimpleNamespace

import pytest

from dslim.exceptions import HttpProbeError
from dslim.MODELS.build_request import HttpProbeCmd
from dslim.PROBES.http_probe import HttpProbe


class RecordingHandler(BaseHTTPRequestHandler):
    requests = []

    def _answer(self):
        self.requests.append((self.command, self.path))
        status = 404 if self.path == "/missing" else 200
        self.send_response(status)
        self.send_header("Content-Length", "2")
        self.end_headers()
        self.wfile.write(b"ok")

    do_GET = _answer
    do_POST = _answer

    def log_message(self, format, *args):
        pass


class GarbageHandler(socketserver.StreamRequestHandler):
    connections = 0

    def handle(self):
        GarbageHandler.connections += 1
        self.rfile.readline()
        self.wfile.write(b"garbage\r\n\r\n")


@pytest.fixture
def server():
    RecordingHandler.requests = []
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), RecordingHandler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()


@pytest.fixture
def garbage_server():
    GarbageHandler.connections = 0
    tcpd = socketserver.ThreadingTCPServer(("127.0.0.1", 0), GarbageHandler)
    thread = threading.Thread(target=tcpd.serve_forever, daemon=True)
    thread.start()
    yield tcpd
    tcpd.shutdown()
    tcpd.server_close()


def fake_inspector(*host_ports):
    return SimpleNamespace(
        published_ports=lambda: [("80/tcp", port) for port in host_ports],
        target_host="127.0.0.1",
    )


def free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestHttpProbe:
    """Tests for HttpProbe."""

    def test_requires_published_ports(self):
        """Test that a container without published ports cannot be probed."""
        with pytest.raises(HttpProbeError):
            HttpProbe(fake_inspector(), [])

    def test_default_command(self):
        """Test that no commands means a single GET /."""
        probe = HttpProbe(fake_inspector(8080), [])
        assert probe.cmds == [HttpProbeCmd()]

    def test_runs_every_command_then_fires(self, server):
        """Test that every command is executed before the done signal fires."""
        cmds = [HttpProbeCmd.parse("/"), HttpProbeCmd.parse("post:/api"), HttpProbeCmd.parse("/missing")]
        probe = HttpProbe(fake_inspector(server.server_address[1]), cmds, start_delay=0)
        probe.start()

        assert probe.done_signal().wait(10)
        assert RecordingHandler.requests == [("GET", "/"), ("POST", "/api"), ("GET", "/missing")]
        assert probe.call_count == 3
        assert probe.ok_count == 2
        assert probe.error_count == 0

    def test_connection_failures_still_fire(self):
        """Test that unreachable ports are counted as errors and the signal still fires."""
        probe = HttpProbe(fake_inspector(free_port()), [HttpProbeCmd()], start_delay=0, retries=2, retry_wait=0)
        probe.start()

        assert probe.done_signal().wait(10)
        assert probe.call_count == 1
        assert probe.error_count == 1

    def test_start_twice(self, server):
        """Test that a probe runs only once."""
        probe = HttpProbe(fake_inspector(server.server_address[1]), [], start_delay=0)
        probe.start()
        with pytest.raises(HttpProbeError):
            probe.start()
        assert probe.done_signal().wait(10)

    def test_malformed_responses_do_not_end_the_run(self, garbage_server):
        """Test that a port answering garbage fails each call and every command still runs."""
        cmds = [HttpProbeCmd.parse("/"), HttpProbeCmd.parse("/a"), HttpProbeCmd.parse("/b")]
        probe = HttpProbe(
            fake_inspector(garbage_server.server_address[1]), cmds, start_delay=0, retries=1, retry_wait=0
        )
        probe.start()

        assert probe.done_signal().wait(10)
        assert probe.call_count == 3
        assert probe.error_count == 3
        assert GarbageHandler.connections == 3
