#!/usr/bin/env python3
# Copyright 2023 Canonical Ltd.
# See LICENSE file for licensing details.

"""Build reconciliation steps for the PAM/NSS stack, services and packages."""

import re
import shlex
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from dialects import Dialect, Platform
from reconciler import Probe, Step

PRESENT = "present"
ABSENT = "absent"

MKHOMEDIR_FEATURE = "with-mkhomedir"
PAM_MKHOMEDIR_PROFILE = "sssd-mkhomedir"
PAM_COMMON_AUTH = "/etc/pam.d/common-auth"
PAM_COMMON_SESSION = "/etc/pam.d/common-session"

ENABLE_MKHOMEDIR_FLAGS = ("--enablesssd", "--enablesssdauth", "--enablelocauthorize", "--enablemkhomedir")
DISABLE_MKHOMEDIR_FLAGS = ("--enablesssd", "--enablesssdauth", "--enablelocauthorize", "--disablemkhomedir")
ENSURE_ABSENT_FLAGS = ("--disablesssd", "--disablesssdauth")


@dataclass(frozen=True)
class AuthState:
    """Desired state of the authentication stack."""

    ensure: str = PRESENT
    profile: str = "sssd"
    features: Tuple[str, ...] = ()
    mkhomedir: bool = True
    umask: str = "0022"
    enable_mkhomedir_flags: Tuple[str, ...] = ENABLE_MKHOMEDIR_FLAGS
    disable_mkhomedir_flags: Tuple[str, ...] = DISABLE_MKHOMEDIR_FLAGS
    ensure_absent_flags: Tuple[str, ...] = ENSURE_ABSENT_FLAGS
    fallback_profile: Optional[str] = None

    def __post_init__(self):
        if self.ensure not in (PRESENT, ABSENT):
            raise ValueError(f"ensure must be {PRESENT!r} or {ABSENT!r}, not {self.ensure!r}")
        if not re.fullmatch(r"0?[0-7]{3}", self.umask):
            raise ValueError(f"invalid umask {self.umask!r}")
        if not self.profile:
            raise ValueError("authselect profile must not be empty")

    @property
    def present(self) -> bool:
        """Whether sssd should be configured."""
        return self.ensure == PRESENT


def shell(script: str) -> Tuple[str, ...]:
    """Wrap a shell snippet as an argv."""
    return ("sh", "-c", script)


def _quote(args: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in args)


def _authselect_profile_probe(profile: str) -> Probe:
    return Probe(
        shell(
            "set -- $(authselect current --raw 2>/dev/null); "
            f'test "$1" = {shlex.quote(profile)}'
        )
    )


def _authselect_feature_probe(feature: str) -> Probe:
    return Probe(
        shell(
            "set -- $(authselect current --raw 2>/dev/null); "
            '[ $# -gt 0 ] && shift; '
            f'for f; do test "$f" = {shlex.quote(feature)} && exit 0; done; exit 1'
        )
    )


def _authselect_steps(platform: Platform, state: AuthState) -> List[Step]:
    if not state.present:
        fallback = state.fallback_profile or platform.fallback_profile or "minimal"
        return [
            Step(
                "authselect-select",
                _authselect_profile_probe(fallback),
                ("authselect", "select", fallback, "--force"),
            )
        ]

    features = list(state.features)
    if state.mkhomedir and MKHOMEDIR_FEATURE not in features:
        features.append(MKHOMEDIR_FEATURE)
    if not state.mkhomedir and MKHOMEDIR_FEATURE in features:
        features.remove(MKHOMEDIR_FEATURE)

    steps = [
        Step(
            "authselect-select",
            _authselect_profile_probe(state.profile),
            ("authselect", "select", state.profile, *features, "--force"),
        )
    ]
    for feature in features:
        steps.append(
            Step(
                f"authselect-feature-{feature}",
                _authselect_feature_probe(feature),
                ("authselect", "enable-feature", feature),
                depends_on="authselect-select",
            )
        )
    if not state.mkhomedir:
        steps.append(
            Step(
                f"authselect-feature-{MKHOMEDIR_FEATURE}",
                _authselect_feature_probe(MKHOMEDIR_FEATURE).inverted(),
                ("authselect", "disable-feature", MKHOMEDIR_FEATURE),
                depends_on="authselect-select",
            )
        )
    return steps


def _authconfig_steps(state: AuthState) -> List[Step]:
    if not state.present:
        flags = state.ensure_absent_flags
    elif state.mkhomedir:
        flags = state.enable_mkhomedir_flags
    else:
        flags = state.disable_mkhomedir_flags

    # authconfig --test prints the full resulting configuration, so equal
    # output means the flags are already in effect.
    probe = Probe(shell(f'test "$(authconfig --test)" = "$(authconfig {_quote(flags)} --test)"'))
    return [Step("authconfig-update", probe, ("authconfig", *flags, "--update"))]


def _grep(pattern: str, path: str) -> Probe:
    return Probe(("grep", "-qE", pattern, path))


def _pam_config_steps(state: AuthState) -> List[Step]:
    sss = Step(
        "pam-config-sss",
        _grep("pam_sss\\.so", PAM_COMMON_AUTH),
        ("pam-config", "--add", "--sss"),
    )
    if not state.present:
        return [
            Step(
                "pam-config-mkhomedir",
                _grep("pam_mkhomedir\\.so", PAM_COMMON_SESSION).inverted(),
                ("pam-config", "--delete", "--mkhomedir"),
            ),
            Step(
                sss.name,
                sss.probe.inverted(),
                ("pam-config", "--delete", "--sss"),
                depends_on="pam-config-mkhomedir",
            ),
        ]

    if state.mkhomedir:
        mkhomedir = Step(
            "pam-config-mkhomedir",
            _grep(f"pam_mkhomedir\\.so.*umask={state.umask}", PAM_COMMON_SESSION),
            ("pam-config", "--add", "--mkhomedir", f"--mkhomedir-umask={state.umask}"),
            depends_on=sss.name,
        )
    else:
        mkhomedir = Step(
            "pam-config-mkhomedir",
            _grep("pam_mkhomedir\\.so", PAM_COMMON_SESSION).inverted(),
            ("pam-config", "--delete", "--mkhomedir"),
            depends_on=sss.name,
        )
    return [sss, mkhomedir]


def _pam_auth_update_steps(state: AuthState) -> List[Step]:
    sss_probe = _grep("pam_sss\\.so", PAM_COMMON_AUTH)
    enable_sss = Step(
        "pam-auth-update-sss",
        sss_probe,
        ("pam-auth-update", "--package", "--enable", "sss"),
    )
    remove_mkhomedir = Step(
        "pam-auth-update-mkhomedir",
        _grep("pam_mkhomedir\\.so[[:space:]]+umask=", PAM_COMMON_SESSION).inverted(),
        ("pam-auth-update", "--package", "--remove", PAM_MKHOMEDIR_PROFILE),
        depends_on=enable_sss.name if state.present else None,
    )
    if not state.present:
        return [
            remove_mkhomedir,
            Step(
                enable_sss.name,
                sss_probe.inverted(),
                ("pam-auth-update", "--package", "--remove", "sss"),
                depends_on=remove_mkhomedir.name,
            ),
        ]
    if not state.mkhomedir:
        return [enable_sss, remove_mkhomedir]
    return [
        enable_sss,
        Step(
            "pam-auth-update-mkhomedir",
            _grep(f"pam_mkhomedir\\.so.*umask={state.umask}", PAM_COMMON_SESSION),
            ("pam-auth-update", "--package", "--enable", PAM_MKHOMEDIR_PROFILE),
            depends_on=enable_sss.name,
        ),
    ]


def auth_steps(platform: Platform, state: AuthState) -> List[Step]:
    """Return the steps converging the PAM/NSS stack for the platform dialect.

    Args:
        platform: Detected host platform.
        state:    Desired authentication state.
    """
    if platform.dialect == Dialect.AUTHSELECT:
        return _authselect_steps(platform, state)
    if platform.dialect == Dialect.AUTHCONFIG:
        return _authconfig_steps(state)
    if platform.dialect == Dialect.PAM_CONFIG:
        return _pam_config_steps(state)
    return _pam_auth_update_steps(state)


def services(
    platform: Platform, state: AuthState, manage_oddjobd: bool = True, dependencies=()
) -> List[str]:
    """Return the services sssd needs running on this platform."""
    names = ["sssd"] + [d for d in dependencies if d != "sssd"]
    if manage_oddjobd and state.mkhomedir and platform.dialect == Dialect.AUTHSELECT:
        names.append("oddjobd")
    return names


def service_steps(names: Sequence[str], ensure: str = PRESENT) -> List[Step]:
    """Return steps enabling and starting, or stopping and disabling, services."""
    steps = []
    for name in names:
        enabled = Probe(("systemctl", "--quiet", "is-enabled", name))
        # is-active exits 3 for an inactive unit.
        active = Probe(("systemctl", "--quiet", "is-active", name), unsatisfied=(1, 3))
        if ensure == PRESENT:
            steps.append(Step(f"service-enable-{name}", enabled, ("systemctl", "enable", name)))
            steps.append(Step(f"service-start-{name}", active, ("systemctl", "start", name)))
        else:
            steps.append(Step(f"service-stop-{name}", active.inverted(), ("systemctl", "stop", name)))
            steps.append(
                Step(f"service-disable-{name}", enabled.inverted(), ("systemctl", "disable", name))
            )
    return steps


_PACKAGE_COMMANDS = {
    "dnf": (("dnf", "-y", "install"), ("dnf", "-y", "remove")),
    "yum": (("yum", "-y", "install"), ("yum", "-y", "remove")),
    "zypper": (("zypper", "--non-interactive", "install"), ("zypper", "--non-interactive", "remove")),
}


def package_steps(platform: Platform, packages: Sequence[str], ensure: str = PRESENT) -> List[Step]:
    """Return steps installing or removing rpm packages.

    Debian family hosts are handled through apt directly.
    """
    if platform.package_manager not in _PACKAGE_COMMANDS:
        raise ValueError(f"no package steps for {platform.package_manager}")

    install, remove = _PACKAGE_COMMANDS[platform.package_manager]
    steps = []
    for name in packages:
        installed = Probe(("rpm", "-q", "--quiet", name))
        if ensure == PRESENT:
            steps.append(Step(f"package-{name}", installed, (*install, name)))
        else:
            steps.append(Step(f"package-{name}", installed.inverted(), (*remove, name)))
    return steps
