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
Command Line Interface for DSlim.
"""
import logging
import shlex
import signal
from typing import List, Optional, Tuple

import click
import yaml
from dotenv import dotenv_values

from .. import __version__
from ..CONFIG.docker_client import DockerClientConfig
from ..exceptions import BuildFailure, ContinueAfterError
from ..MODELS.build_request import (
    BuildRequest,
    ContainerOverrides,
    HttpProbeCmd,
    VolumeMount,
    parse_image_overrides,
)
from ..MODELS.continue_after import DEFAULT_TIMEOUT, SignalMode, continue_after_from
from ..PIPELINE.orchestrator import BuildPipeline
from ..UTILS.fsutil import default_state_path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.option('--debug', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, debug):
    """
    DSlim - minimize Docker images by observing what they use.
    """
    ctx.ensure_object(dict)
    ctx.obj['debug'] = debug
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, format=LOG_FORMAT)


def load_http_probe_cmds(specs: Tuple[str, ...], cmd_file: Optional[str]) -> List[HttpProbeCmd]:
    """
    Collects probe commands from the command line and from a YAML or JSON file
    holding a list of {protocol, method, resource} mappings.
    """
    cmds = [HttpProbeCmd.parse(spec) for spec in specs]
    if cmd_file:
        with open(cmd_file, 'r') as f:
            data = yaml.safe_load(f) or []
        if isinstance(data, dict):
            data = data.get('commands') or []
        if not isinstance(data, list):
            raise ValueError(f"{cmd_file} must hold a list of probe commands")
        cmds.extend(HttpProbeCmd.model_validate(item) for item in data)
    return cmds


def build_overrides(entrypoint, cmd, workdir, env, env_file, expose) -> ContainerOverrides:
    """
    Turns the override options into ContainerOverrides. An empty --entrypoint
    or --cmd clears the image value.
    """
    env_items = []
    if env_file:
        env_items.extend(f"{k}={v or ''}" for k, v in dotenv_values(env_file).items())
    env_items.extend(env)
    return ContainerOverrides(
        entrypoint=shlex.split(entrypoint) if entrypoint else [],
        clear_entrypoint=entrypoint == "",
        cmd=shlex.split(cmd) if cmd else [],
        clear_cmd=cmd == "",
        workdir=workdir or "",
        env=env_items,
        exposed_ports=list(expose),
    )


@cli.command()
@click.argument('image')
@click.option('--tag', default='', help='Tag of the minimized image (default: <image>.slim)')
@click.option('--state-path', default=None, help='State directory (default: ~/.dslim)')
@click.option('--docker-host', default=None, help='Docker daemon address, overrides DOCKER_HOST')
@click.option('--tls/--no-tls', default=None, help='Use TLS to reach the Docker daemon')
@click.option('--tls-verify/--no-tls-verify', default=None, help='Verify the daemon certificate')
@click.option('--tls-cert-path', default=None, help='Directory with ca.pem, cert.pem and key.pem')
@click.option('--docker-env-file', default=None, type=click.Path(exists=True, dir_okay=False),
              help='.env file with DOCKER_HOST, DOCKER_TLS_VERIFY, DOCKER_CERT_PATH')
@click.option('--http-probe', is_flag=True, help='Probe the container over HTTP (forces --continue-after=probe)')
@click.option('--http-probe-cmd', multiple=True, help='Probe command: [[protocol:]method:]resource')
@click.option('--http-probe-cmd-file', default=None, type=click.Path(exists=True, dir_okay=False),
              help='YAML or JSON file with probe commands')
@click.option('--remove-file-artifacts', is_flag=True, help='Remove the artifact location when done')
@click.option('--show-clogs', is_flag=True, help='Print the container logs before it is removed')
@click.option('--entrypoint', default=None, help='Override the entrypoint ("" clears it)')
@click.option('--cmd', default=None, help='Override the cmd ("" clears it)')
@click.option('--workdir', default=None, help='Override the working directory')
@click.option('--env', '-e', multiple=True, help='Add an environment variable KEY=VALUE')
@click.option('--env-file', default=None, type=click.Path(exists=True, dir_okay=False),
              help='.env file with container environment variables')
@click.option('--expose', multiple=True, help='Expose an extra port, e.g. 8080 or 53/udp')
@click.option('--image-overrides', default='', help='Overrides kept in the image: entrypoint,cmd,workdir,env,expose or all')
@click.option('--mount', multiple=True, help='Mount a host path: source:target[:ro]')
@click.option('--exclude-path', multiple=True, help='Never copy this path or glob into the image')
@click.option('--include-path', multiple=True, help='Always copy this path into the image')
@click.option('--continue-after', default='enter',
              help='enter, signal, timeout, probe, or a number of seconds')
@click.option('--timeout', 'continue_timeout', default=DEFAULT_TIMEOUT, type=float,
              help='Seconds to wait in timeout mode')
@click.pass_context
def build(ctx, image, tag, state_path, docker_host, tls, tls_verify, tls_cert_path, docker_env_file,
          http_probe, http_probe_cmd, http_probe_cmd_file, remove_file_artifacts, show_clogs,
          entrypoint, cmd, workdir, env, env_file, expose, image_overrides, mount,
          exclude_path, include_path, continue_after, continue_timeout):
    """Build a minimized image from IMAGE."""
    try:
        continue_after_mode = continue_after_from(continue_after, continue_timeout)
        request = BuildRequest(
            image_ref=image,
            state_path=state_path or default_state_path(),
            custom_tag=tag,
            debug=ctx.obj.get('debug', False),
            docker_client=DockerClientConfig.from_env(
                env_file=docker_env_file,
                host=docker_host,
                use_tls=tls,
                verify_tls=tls_verify,
                tls_cert_path=tls_cert_path,
            ),
            overrides=build_overrides(entrypoint, cmd, workdir, env, env_file, expose),
            image_overrides=parse_image_overrides(image_overrides),
            volume_mounts={spec: VolumeMount.parse(spec) for spec in mount},
            exclude_paths=frozenset(exclude_path),
            include_paths=frozenset(include_path),
            do_http_probe=http_probe,
            http_probe_cmds=tuple(load_http_probe_cmds(http_probe_cmd, http_probe_cmd_file)),
            remove_file_artifacts=remove_file_artifacts,
            show_container_logs=show_clogs,
            continue_after=continue_after_mode,
        )
    except (ValueError, yaml.YAMLError) as e:
        raise click.UsageError(str(e), ctx=ctx)

    if isinstance(request.continue_after, SignalMode) and not request.do_http_probe:
        done = request.continue_after.done
        signal.signal(signal.SIGUSR1, lambda signum, frame: done.fire())

    try:
        outcome = BuildPipeline(request).run()
    except ContinueAfterError as e:
        raise click.UsageError(str(e), ctx=ctx)
    except BuildFailure as e:
        click.echo(f"dslim: error: {e}", err=True)
        ctx.exit(1)

    for warning in outcome.warnings:
        click.echo(f"dslim: warning: {warning}", err=True)


@cli.command()
def version():
    """Print the version"""
    click.echo(f"dslim {__version__}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
