#!/usr/bin/env python3
# Copyright 2023 Canonical Ltd.
# See LICENSE file for licensing details.

"""SSSD Operator Charm."""

import logging
from typing import List, Optional

import yaml
from ops.charm import ActionEvent, CharmBase
from ops.main import main
from ops.model import ActiveStatus, BlockedStatus, MaintenanceStatus

import authstack
import dialects
import sssd
from reconciler import ReconcileError, Reconciler, Result

logger = logging.getLogger(__name__)

NOT_RUNNING = "sssd is not running"


class SSSDCharm(CharmBase):
    """SSSD Charm."""

    def __init__(self, *args):
        super().__init__(*args)
        # Standard Charm Events
        self.framework.observe(self.on.install, self._on_install)
        self.framework.observe(self.on.config_changed, self._on_config_changed)
        self.framework.observe(self.on.start, self._on_start)
        self.framework.observe(self.on.update_status, self._on_update_status)
        self.framework.observe(self.on.remove, self._on_remove)
        # Actions
        self.framework.observe(self.on.reconcile_action, self._on_reconcile_action)

    def _on_install(self, event):
        """Handle install event."""
        logger.debug("Install")
        self._converge()

    def _on_config_changed(self, event):
        """Handle config-changed event."""
        logger.debug("Config changed")
        self._converge()

    def _on_start(self, event):
        """Handle start event."""
        logger.debug("Start")
        self._converge()

    def _on_update_status(self, event):
        """Handle update-status event."""
        if self.config["ensure"] != authstack.PRESENT or not self.config["config"]:
            return
        if not sssd.running:
            logger.error("Failed to start sssd")
            self.unit.status = BlockedStatus(NOT_RUNNING)
        elif self.unit.status == BlockedStatus(NOT_RUNNING):
            self.unit.status = ActiveStatus("sssd active")

    def _on_remove(self, event):
        """Handle remove event."""
        logger.debug("Remove")
        try:
            self.reconcile(authstack.ABSENT)
        except (ReconcileError, sssd.SSSDOpsError, dialects.UnsupportedPlatformError) as e:
            logger.error(f"failed to unconfigure sssd: {e.message}")
        except ValueError as e:
            logger.error(f"failed to unconfigure sssd: {e}")

    def _on_reconcile_action(self, event: ActionEvent):
        """Handle reconcile action."""
        reconciler = Reconciler(timeout=self.config["command-timeout"])
        try:
            self.reconcile(self.config["ensure"], reconciler)
        except (ReconcileError, sssd.SSSDOpsError, dialects.UnsupportedPlatformError) as e:
            event.set_results({"steps": _summary(reconciler)})
            event.fail(e.message)
            return
        except (ValueError, yaml.YAMLError) as e:
            event.fail(f"invalid configuration: {e}")
            return
        event.set_results({"steps": _summary(reconciler)})

    def _converge(self) -> None:
        """Converge the unit and report the outcome as unit status."""
        ensure = self.config["ensure"]
        if ensure == authstack.PRESENT and not self.config["config"]:
            self.unit.status = BlockedStatus("config option is empty")
            return

        self.unit.status = MaintenanceStatus(f"reconciling sssd ({ensure})")
        try:
            self.reconcile(ensure)
        except ReconcileError as e:
            self.unit.status = BlockedStatus(f"{e.result.step} {e.result.error.value}")
            return
        except (sssd.SSSDOpsError, dialects.UnsupportedPlatformError) as e:
            logger.error(e.message)
            self.unit.status = BlockedStatus(e.message)
            return
        except (ValueError, yaml.YAMLError) as e:
            logger.error(f"invalid configuration: {e}")
            self.unit.status = BlockedStatus("invalid configuration, see debug-log")
            return

        if ensure == authstack.PRESENT:
            self.unit.status = ActiveStatus("sssd active")
        else:
            self.unit.status = ActiveStatus("sssd absent")

    def _auth_state(self, ensure: str, platform: dialects.Platform) -> authstack.AuthState:
        """Build the desired authentication state from charm config."""
        return authstack.AuthState(
            ensure=ensure,
            profile=self.config["authselect-profile"],
            features=tuple(self.config["authselect-features"].split()),
            mkhomedir=self.config["mkhomedir"],
            umask=self.config["mkhomedir-umask"],
            enable_mkhomedir_flags=tuple(self.config["enable-mkhomedir-flags"].split()),
            disable_mkhomedir_flags=tuple(self.config["disable-mkhomedir-flags"].split()),
            ensure_absent_flags=tuple(self.config["ensure-absent-flags"].split()),
            fallback_profile=platform.fallback_profile,
        )

    def reconcile(self, ensure: str, reconciler: Optional[Reconciler] = None) -> List[Result]:
        """Run one reconciliation pass.

        Args:
            ensure:     Either "present" or "absent".
            reconciler: Reconciler recording the pass. A new one is used if omitted.

        Returns:
            List[Result]: Results of every step of the pass.
        """
        platform = dialects.detect()
        state = self._auth_state(ensure, platform)
        packages = list(platform.packages) + self.config["extra-packages"].split()
        services = authstack.services(
            platform,
            state,
            manage_oddjobd=self.config["manage-oddjobd"],
            dependencies=self.config["service-dependencies"].split(),
        )
        if reconciler is None:
            reconciler = Reconciler(timeout=self.config["command-timeout"])
        templates = self.charm_dir / "templates"
        results = []

        if not state.present:
            results += reconciler.ensure(authstack.service_steps(services, authstack.ABSENT))
            results += reconciler.ensure(authstack.auth_steps(platform, state))
            if platform.package_manager == "apt":
                sssd.remove(packages)
                sssd.remove_pam_profile(authstack.PAM_MKHOMEDIR_PROFILE)
            else:
                results += reconciler.ensure(
                    authstack.package_steps(platform, packages, authstack.ABSENT)
                )
            sssd.remove_conf()
            return results

        content = sssd.render_conf(yaml.safe_load(self.config["config"]), templates)
        if platform.package_manager == "apt":
            sssd.install(packages)
        else:
            results += reconciler.ensure(authstack.package_steps(platform, packages))

        changed = sssd.save_conf(content)
        if platform.dialect == dialects.Dialect.PAM_AUTH_UPDATE and state.mkhomedir:
            sssd.save_pam_profile(authstack.PAM_MKHOMEDIR_PROFILE, state.umask, templates)
        results += reconciler.ensure(authstack.auth_steps(platform, state))
        results += reconciler.ensure(authstack.service_steps(services))
        if changed:
            sssd.restart()
        return results


def _summary(reconciler: Reconciler) -> str:
    return "\n".join(f"{name}: {state.value}" for name, state in reconciler.states.items())


if __name__ == "__main__":  # pragma: nocover
    main(SSSDCharm)
