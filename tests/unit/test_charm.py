#!/usr/bin/env python3
# Copyright 2023 Canonical Ltd.
# See LICENSE file for licensing details.

"""Test default charm events such as install, config-changed, etc."""

import unittest
from unittest.mock import patch

import dialects
import sssd
from charm import SSSDCharm
from ops.model import ActiveStatus, BlockedStatus
from ops.testing import Harness
from reconciler import ErrorKind, ReconcileError, Reconciler, Result, State

CONFIG = """
sssd:
  config_file_version: 2
  services: [nss, pam]
  domains: example.com
domain/example.com:
  id_provider: ldap
"""

UBUNTU = dialects.lookup("debian", 22)
RHEL = dialects.lookup("redhat", 9)


def fake_ensure(reconciler, steps):
    """Record every step as skipped."""
    results = []
    for step in steps:
        reconciler.states[step.name] = State.SKIPPED
        results.append(Result(step.name, State.SKIPPED))
    return results


class TestCharm(unittest.TestCase):
    """Unit test sssd charm."""

    def setUp(self) -> None:
        """Set up unit test."""
        self.harness = Harness(SSSDCharm)
        self.addCleanup(self.harness.cleanup)
        self.harness.begin()

        patches = {
            "detect": patch("dialects.detect", return_value=UBUNTU),
            "install": patch("sssd.install"),
            "remove": patch("sssd.remove"),
            "save_conf": patch("sssd.save_conf", return_value=True),
            "remove_conf": patch("sssd.remove_conf"),
            "save_pam_profile": patch("sssd.save_pam_profile"),
            "remove_pam_profile": patch("sssd.remove_pam_profile"),
            "restart": patch("sssd.restart"),
            "ensure": patch.object(Reconciler, "ensure", autospec=True, side_effect=fake_ensure),
        }
        self.mocks = {}
        for name, p in patches.items():
            self.mocks[name] = p.start()
            self.addCleanup(p.stop)

    def ensured(self):
        """Return names of every step passed to the reconciler."""
        return [step.name for call in self.mocks["ensure"].call_args_list for step in call[0][1]]

    def test_empty_config_blocks(self) -> None:
        """Test the unit blocks until sssd config is set."""
        self.harness.charm.on.install.emit()
        self.assertEqual(self.harness.charm.unit.status, BlockedStatus("config option is empty"))
        self.mocks["install"].assert_not_called()

    def test_config_changed(self) -> None:
        """Test a present pass on Ubuntu."""
        self.harness.update_config({"config": CONFIG, "extra-packages": "sssd-tools"})
        self.assertEqual(self.harness.charm.unit.status, ActiveStatus("sssd active"))
        self.mocks["install"].assert_called_once_with(
            ["sssd", "libpam-sss", "libnss-sss", "sssd-tools"]
        )
        rendered = self.mocks["save_conf"].call_args[0][0]
        self.assertIn("services = nss, pam", rendered)
        self.mocks["save_pam_profile"].assert_called_once()
        self.assertEqual(
            self.ensured(),
            [
                "pam-auth-update-sss",
                "pam-auth-update-mkhomedir",
                "service-enable-sssd",
                "service-start-sssd",
            ],
        )
        self.mocks["restart"].assert_called_once()

    def test_unchanged_config_does_not_restart(self) -> None:
        """Test sssd is only restarted when its configuration changed."""
        self.mocks["save_conf"].return_value = False
        self.harness.update_config({"config": CONFIG})
        self.mocks["restart"].assert_not_called()

    def test_rpm_platform(self) -> None:
        """Test packages and oddjobd are reconciled on authselect hosts."""
        self.mocks["detect"].return_value = RHEL
        self.harness.update_config({"config": CONFIG, "authselect-features": "with-sudo"})
        self.mocks["install"].assert_not_called()
        self.mocks["save_pam_profile"].assert_not_called()
        steps = self.ensured()
        self.assertEqual(steps[0], "package-sssd")
        self.assertIn("authselect-feature-with-sudo", steps)
        self.assertIn("service-start-oddjobd", steps)
        self.assertEqual(self.harness.charm.unit.status, ActiveStatus("sssd active"))

    def test_failed_step_blocks(self) -> None:
        """Test a failed step is reported in the unit status."""
        self.mocks["ensure"].side_effect = ReconcileError(
            Result("pam-auth-update-sss", State.FAILED, ErrorKind.ACTION_FAILED, "permission denied")
        )
        self.harness.update_config({"config": CONFIG})
        self.assertEqual(
            self.harness.charm.unit.status,
            BlockedStatus("pam-auth-update-sss action-failed"),
        )
        self.mocks["restart"].assert_not_called()

    def test_invalid_config_blocks(self) -> None:
        """Test invalid YAML or umask blocks the unit."""
        self.harness.update_config({"config": "sssd: [unclosed"})
        self.assertEqual(
            self.harness.charm.unit.status,
            BlockedStatus("invalid configuration, see debug-log"),
        )
        self.mocks["install"].assert_not_called()

        self.harness.update_config({"config": CONFIG, "mkhomedir-umask": "22x"})
        self.assertIsInstance(self.harness.charm.unit.status, BlockedStatus)

    def test_unsupported_platform_blocks(self) -> None:
        """Test an unsupported OS blocks the unit."""
        self.mocks["detect"].side_effect = dialects.UnsupportedPlatformError(
            "unsupported operating system 'arch'"
        )
        self.harness.update_config({"config": CONFIG})
        self.assertEqual(
            self.harness.charm.unit.status,
            BlockedStatus("unsupported operating system 'arch'"),
        )

    def test_absent(self) -> None:
        """Test an absent pass unconfigures sssd."""
        self.harness.update_config({"ensure": "absent"})
        self.assertEqual(self.harness.charm.unit.status, ActiveStatus("sssd absent"))
        self.assertEqual(
            self.ensured(),
            [
                "service-stop-sssd",
                "service-disable-sssd",
                "pam-auth-update-mkhomedir",
                "pam-auth-update-sss",
            ],
        )
        self.mocks["remove"].assert_called_once()
        self.mocks["remove_pam_profile"].assert_called_once()
        self.mocks["remove_conf"].assert_called_once()
        self.mocks["install"].assert_not_called()

    def test_remove(self) -> None:
        """Test removing the unit unconfigures sssd and tolerates failures."""
        self.harness.charm.on.remove.emit()
        self.mocks["remove_conf"].assert_called_once()

        self.mocks["remove"].side_effect = sssd.SSSDOpsError("dpkg lock held")
        self.harness.charm.on.remove.emit()

    def test_remove_invalid_umask(self) -> None:
        """Test removing the unit with an invalid umask does not raise."""
        self.harness.update_config({"mkhomedir-umask": "22x"})
        self.harness.charm.on.remove.emit()
        self.mocks["remove_conf"].assert_not_called()

    @patch("sssd.__getattr__")
    def test_update_status(self, getattr_) -> None:
        """Test update-status reports a stopped daemon."""
        self.harness.update_config({"config": CONFIG})
        getattr_.return_value = False
        self.harness.charm.on.update_status.emit()
        self.assertEqual(self.harness.charm.unit.status, BlockedStatus("sssd is not running"))

        getattr_.return_value = True
        self.harness.charm.on.update_status.emit()
        self.assertEqual(self.harness.charm.unit.status, ActiveStatus("sssd active"))

    def test_reconcile_action(self) -> None:
        """Test the reconcile action reports every step."""
        self.harness.update_config({"config": CONFIG})
        output = self.harness.run_action("reconcile")
        self.assertIn("service-start-sssd: skipped", output.results["steps"])
