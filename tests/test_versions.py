"""Tests for agent version reconciliation."""

from __future__ import annotations

import pytest

from fleetnode.errors import DowngradeRequiresOverwrite, UserDeclined
from fleetnode.versions import Decision, compare_versions, is_valid_version, reconcile


def _reconcile(installed, available, confirm, *, overwrite=False, batch_mode=False):
    return reconcile(
        installed, available, overwrite=overwrite, batch_mode=batch_mode, confirm=confirm
    )


def test_versions_compare_numerically():
    assert compare_versions("2.10.0", "2.9.9") == 1
    assert compare_versions("2.9.9", "2.10.0") == -1
    assert compare_versions("2.1", "2.1.0") == -1
    assert compare_versions("2.1.0", "2.1.0") == 0


def test_is_valid_version():
    assert is_valid_version("2.28.0")
    assert not is_valid_version("")
    assert not is_valid_version(None)
    assert not is_valid_version("unknown")


@pytest.mark.parametrize("version", ["2.1.0", "1.0", "10.20.30"])
def test_equal_versions_are_noop(version, confirmation):
    confirm = confirmation()
    for overwrite in (False, True):
        for batch_mode in (False, True):
            decision = _reconcile(
                version, version, confirm, overwrite=overwrite, batch_mode=batch_mode
            )
            assert decision is Decision.NOOP
    assert confirm.questions == []


def test_upgrade_needs_no_confirmation(confirmation):
    confirm = confirmation()

    assert _reconcile("2.9.0", "2.10.0", confirm) is Decision.UPGRADE
    assert confirm.questions == []


def test_downgrade_in_batch_mode_fails_without_prompt(confirmation):
    confirm = confirmation("y")

    with pytest.raises(DowngradeRequiresOverwrite):
        _reconcile("2.10.0", "2.9.0", confirm, batch_mode=True)
    assert confirm.questions == []


def test_downgrade_with_overwrite_is_allowed(confirmation):
    confirm = confirmation()

    assert _reconcile("2.10.0", "2.9.0", confirm, overwrite=True) is Decision.DOWNGRADE
    assert confirm.questions == []


def test_interactive_downgrade_requires_literal_y(confirmation):
    assert _reconcile("2.10.0", "2.9.0", confirmation("y")) is Decision.DOWNGRADE

    for answer in ("yes", "Y", "n", ""):
        with pytest.raises(UserDeclined):
            _reconcile("2.10.0", "2.9.0", confirmation(answer))


def test_missing_or_unreadable_installed_version_installs(confirmation):
    assert _reconcile(None, "2.1.0", confirmation()) is Decision.INSTALL
    assert _reconcile("garbage", "2.1.0", confirmation()) is Decision.INSTALL


def test_unknown_available_version_installs_through_repository(confirmation):
    assert _reconcile("2.1.0", None, confirmation()) is Decision.INSTALL
