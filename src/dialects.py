#!/usr/bin/env python3
# Copyright 2023 Canonical Ltd.
# See LICENSE file for licensing details.

"""Map the host operating system to its authentication tooling."""

import enum
import logging
import platform
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class UnsupportedPlatformError(Exception):
    """Exception raised when the host OS has no known dialect."""

    @property
    def message(self) -> str:
        """Return message passed as argument to exception."""
        return self.args[0]


class Dialect(enum.Enum):
    """Tool used to manage the PAM/NSS stack."""

    AUTHSELECT = "authselect"
    AUTHCONFIG = "authconfig"
    PAM_CONFIG = "pam-config"
    PAM_AUTH_UPDATE = "pam-auth-update"


@dataclass(frozen=True)
class Platform:
    """Detected host platform and the tooling selected for it."""

    family: str
    major: int
    dialect: Dialect
    package_manager: str
    packages: Tuple[str, ...]
    fallback_profile: Optional[str] = None


_RPM_PACKAGES = ("sssd", "oddjob-mkhomedir")

# (family, first major, last major or None, dialect, package manager, packages, fallback profile)
DIALECTS = (
    ("redhat", 0, 7, Dialect.AUTHCONFIG, "yum", _RPM_PACKAGES + ("authconfig",), None),
    ("redhat", 8, None, Dialect.AUTHSELECT, "dnf", _RPM_PACKAGES + ("authselect",), "minimal"),
    ("fedora", 0, 27, Dialect.AUTHCONFIG, "dnf", _RPM_PACKAGES + ("authconfig",), None),
    ("fedora", 28, 35, Dialect.AUTHSELECT, "dnf", _RPM_PACKAGES + ("authselect",), "minimal"),
    ("fedora", 36, None, Dialect.AUTHSELECT, "dnf", _RPM_PACKAGES + ("authselect",), "local"),
    ("suse", 0, None, Dialect.PAM_CONFIG, "zypper", ("sssd", "pam-config"), None),
    ("debian", 0, None, Dialect.PAM_AUTH_UPDATE, "apt", ("sssd", "libpam-sss", "libnss-sss"), None),
)

FAMILIES = {
    "rhel": "redhat",
    "centos": "redhat",
    "rocky": "redhat",
    "almalinux": "redhat",
    "ol": "redhat",
    "scientific": "redhat",
    "fedora": "fedora",
    "sles": "suse",
    "sled": "suse",
    "opensuse": "suse",
    "opensuse-leap": "suse",
    "opensuse-tumbleweed": "suse",
    "suse": "suse",
    "debian": "debian",
    "ubuntu": "debian",
}


def family(os_release: Dict[str, str]) -> str:
    """Return the OS family from os-release fields, ID first then ID_LIKE."""
    candidates = [os_release.get("ID", "")] + os_release.get("ID_LIKE", "").split()
    for candidate in candidates:
        if candidate in FAMILIES:
            return FAMILIES[candidate]
    raise UnsupportedPlatformError(f"unsupported operating system {os_release.get('ID')!r}")


def major_version(os_release: Dict[str, str]) -> int:
    """Return the major release number, 0 for rolling releases."""
    major = os_release.get("VERSION_ID", "").split(".")[0]
    return int(major) if major.isdigit() else 0


def lookup(os_family: str, major: int) -> Platform:
    """Select the dialect for an OS family and major version."""
    for fam, first, last, dialect, manager, packages, fallback in DIALECTS:
        if fam == os_family and major >= first and (last is None or major <= last):
            return Platform(os_family, major, dialect, manager, packages, fallback)
    raise UnsupportedPlatformError(f"no dialect for {os_family} {major}")


def detect(os_release: Optional[Dict[str, str]] = None) -> Platform:
    """Detect the host platform.

    Args:
        os_release: Parsed os-release fields. Read from the host when omitted.
    """
    if os_release is None:
        try:
            os_release = platform.freedesktop_os_release()
        except OSError as e:
            raise UnsupportedPlatformError(f"cannot read os-release: {e}")

    detected = lookup(family(os_release), major_version(os_release))
    logger.debug(f"detected {detected.family} {detected.major}, using {detected.dialect.value}")
    return detected
