#!/usr/bin/env python3
# Copyright 2023 Canonical Ltd.
# See LICENSE file for licensing details.

"""Provides sssd functions to install, configure and control sssd."""

import logging
import pathlib
from typing import Any, Dict, List

from charmlibs import apt, systemd
from jinja2 import Template

import helpers

logger = logging.getLogger(__name__)

SSSD_CONFIG_FILE = "/etc/sssd/sssd.conf"
PAM_CONFIGS_DIR = "/usr/share/pam-configs"
SCALARS = (str, int, float, bool)


class SSSDOpsError(Exception):
    """Exception raised when a sssd operation has failed."""

    @property
    def message(self) -> str:
        """Return message passed as argument to exception."""
        return self.args[0]


def __getattr__(prop: str):
    if prop == "running":
        return systemd.service_running("sssd")
    raise AttributeError(f"Module {__name__!r} has no property {prop!r}")


def install(packages: List[str]) -> None:
    """Install packages using charmlib apt.

    Args:
        packages: Names of the packages to install.
    """
    try:
        apt.update()
        logger.info(f"installing packages {packages} with apt")
        apt.add_package(packages)
    except apt.PackageNotFoundError as e:
        logger.error("a specified package not found in package cache or on system")
        raise SSSDOpsError(f"failed to install packages {packages}. reason: {e}")
    except apt.PackageError as e:
        logger.error("Could not install packages.")
        raise SSSDOpsError(f"failed to install packages {packages}. reason: {e}")


def remove(packages: List[str]) -> None:
    """Remove packages using charmlib apt, skipping ones already absent."""
    logger.info(f"removing packages {packages} with apt")
    for name in packages:
        try:
            apt.remove_package(name)
        except apt.PackageNotFoundError:
            logger.debug(f"{name} is not installed...")
        except apt.PackageError as e:
            logger.error("Could not remove packages.")
            raise SSSDOpsError(f"failed to remove package {name}. reason: {e}")


def render_conf(config: Dict[str, Dict[str, Any]], template_dir: pathlib.Path) -> str:
    """Render sssd.conf.

    Args:
        config:       Mapping of section name to option mapping.
        template_dir: Directory holding the charm templates.

    Returns:
        str: Rendered configuration.
    """
    if not isinstance(config, dict) or not all(isinstance(s, dict) for s in config.values()):
        raise ValueError("sssd config must map section names to option mappings")
    for section, options in config.items():
        for key, value in options.items():
            values = value if isinstance(value, list) else [value]
            if not all(isinstance(v, SCALARS) for v in values):
                raise ValueError(
                    f"option {key} in section {section} must be a scalar or a list of scalars"
                )

    template = Template(
        pathlib.Path(template_dir, "sssd.conf.j2").read_text(),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    return template.render(config=config)


def save_conf(content: str, path: str = SSSD_CONFIG_FILE) -> bool:
    """Save sssd conf.

    Args:
        content: Rendered configuration.
        path:    Destination of the configuration file.

    Returns:
        bool: Whether the file content changed.
    """
    changed = helpers.save(content, path, mode=0o600)
    if changed:
        logger.info(f"updated {path}")
    return changed


def remove_conf(path: str = SSSD_CONFIG_FILE) -> None:
    """Remove sssd configuration."""
    pathlib.Path(path).unlink(missing_ok=True)


def save_pam_profile(name: str, umask: str, template_dir: pathlib.Path) -> bool:
    """Save the pam-auth-update profile creating home directories.

    Args:
        name:         Profile name under the pam-configs directory.
        umask:        Umask applied to created home directories.
        template_dir: Directory holding the charm templates.
    """
    template = Template(pathlib.Path(template_dir, "pam-mkhomedir.j2").read_text())
    return helpers.save(
        template.render(umask=umask), f"{PAM_CONFIGS_DIR}/{name}", mode=0o644
    )


def remove_pam_profile(name: str) -> None:
    """Remove the pam-auth-update profile."""
    pathlib.Path(PAM_CONFIGS_DIR, name).unlink(missing_ok=True)


def restart() -> None:
    """Restart sssd."""
    try:
        systemd.service_restart("sssd")
    except systemd.SystemdError as e:
        logger.error(f"failed to restart sssd: {e}")
        raise SSSDOpsError(f"failed to restart sssd. reason: {e}")
