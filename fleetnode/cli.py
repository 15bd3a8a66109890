"""Command line entry point for installing and registering a fleet node.

Usage:
    fleetnode-install -i <path_to_packages> -p <pattern>

HZN_EXCHANGE_URL, HZN_FSS_CSSURL, HZN_ORG_ID and HZN_EXCHANGE_USER_AUTH must be
defined either in the config file or the environment.
"""

import logging
from pathlib import Path
import sys
from typing import Any, Dict, Optional

import click

from . import __version__
from .configuration import (
    RuntimeProfile,
    load_runtime_configuration,
    resolve_profile_path,
)
from .errors import EXIT_INVALID_INPUT, OnboardError, UserDeclined
from .logging_utils import DEFAULT_VERBOSITY, NOTICE, setup_logging
from .pipeline import Orchestrator, RunOptions
from .prompts import ConsoleConfirmation
from .settings import (
    CERTIFICATE,
    NODE_ID,
    NODE_POLICY,
    OVERWRITE,
    PATTERN,
    SKIP_REGISTRATION,
    USER_AUTH,
    WAIT_FOR_SERVICE,
    WAIT_FOR_SERVICE_ORG,
)

logger = logging.getLogger("fleetnode.cli")

_PathType = click.Path(path_type=Path)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-c", "certificate", default=None, help="Path to a certificate file")
@click.option("-k", "config_file", type=_PathType, default=None,
              help="Path to a configuration file (default: agent-install.cfg in the current directory, if present)")
@click.option("-p", "pattern", default=None, help="Pattern name to register with")
@click.option("-i", "install_source", default=None,
              help="Installation packages location; an http(s) URL is used as an apt repository")
@click.option("-j", "apt_key", type=_PathType, default=None,
              help="Public key file for the apt repository given with -i")
@click.option("-t", "apt_branch", default=None, help="Branch to use in the apt repository (default: updates)")
@click.option("-n", "node_policy", default=None, help="Path to a node policy file")
@click.option("-s", "skip_registration", is_flag=True, help="Skip registration")
@click.option("-v", "show_version", is_flag=True, help="Show version and exit")
@click.option("-l", "verbosity", type=click.IntRange(0, 5), default=DEFAULT_VERBOSITY,
              show_default=True, help="Logging verbosity level (0-5, 5 is verbose)")
@click.option("-u", "user_auth", default=None, help="Exchange user authorization credentials")
@click.option("-d", "node_id", default=None, help="The id to register this node with")
@click.option("-z", "install_archive", type=_PathType, default=None,
              help="Agent install files archive (default: agent-install-files.tar.gz)")
@click.option("-f", "overwrite", is_flag=True,
              help="Install an older version and overwrite a configured node without prompting")
@click.option("-w", "wait_for_service", default=None,
              help="Wait for the named service to start executing on this node")
@click.option("-o", "wait_for_service_org", default=None,
              help="Org id of the service given with -w")
@click.option("--profile", type=_PathType, default=None, envvar="FLEETNODE_PROFILE",
              help="YAML runtime profile for the installer itself")
def main(
    certificate: Optional[str],
    config_file: Optional[Path],
    pattern: Optional[str],
    install_source: Optional[str],
    apt_key: Optional[Path],
    apt_branch: Optional[str],
    node_policy: Optional[str],
    skip_registration: bool,
    show_version: bool,
    verbosity: int,
    user_auth: Optional[str],
    node_id: Optional[str],
    install_archive: Optional[Path],
    overwrite: bool,
    wait_for_service: Optional[str],
    wait_for_service_org: Optional[str],
    profile: Optional[Path],
):
    """Install the agent, then create and register this node."""

    if show_version:
        click.echo(f"fleetnode-install version: {__version__}")
        return

    bundle = load_runtime_configuration(resolve_profile_path(profile))
    if bundle.status != "ready":
        for diagnostic in bundle.diagnostics:
            click.echo(f"[profile] {diagnostic.level}: {diagnostic.message}", err=True)
        sys.exit(EXIT_INVALID_INPUT)
    runtime = RuntimeProfile.from_bundle(bundle)

    log_path = setup_logging(runtime.log_dir, verbosity, runtime.structured_logging)
    logger.debug("Logging to %s", log_path)
    for diagnostic in bundle.diagnostics:
        logger.warning("[profile] %s", diagnostic.message)

    values: Dict[str, Any] = {
        CERTIFICATE: certificate,
        PATTERN: pattern,
        NODE_POLICY: node_policy,
        USER_AUTH: user_auth,
        NODE_ID: node_id,
        WAIT_FOR_SERVICE: wait_for_service,
        WAIT_FOR_SERVICE_ORG: wait_for_service_org,
        SKIP_REGISTRATION: skip_registration,
        OVERWRITE: overwrite,
    }
    options = RunOptions(
        overrides={key: value for key, value in values.items() if value},
        config_file=config_file,
        install_source=install_source,
        apt_key=apt_key,
        apt_branch=apt_branch,
        install_archive=install_archive,
    )

    orchestrator = Orchestrator(runtime, ConsoleConfirmation())
    try:
        orchestrator.run(options)
    except UserDeclined as exc:
        logger.log(NOTICE, "%s", exc)
        sys.exit(exc.exit_code)
    except OnboardError as exc:
        logger.error("%s", exc)
        logger.log(NOTICE, "Installation failed, see %s for details", log_path)
        sys.exit(exc.exit_code)


if __name__ == "__main__":
    main()
