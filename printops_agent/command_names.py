"""Centralized command kind constants.

Kinds arrive in the ``kind`` (or legacy ``commandType``) field of a command:
    {"id": 7, "kind": "get_status", "deviceId": "LaserJet-1", "payload": {}}

Older dashboards still send the printer-specific names listed in
``LEGACY_ALIASES``; they are normalised before dispatch.
"""

from __future__ import annotations


class CommandNames:
    """Command kinds understood by the dispatcher."""

    RESTART_SUBSYSTEM = "restart_subsystem"
    """Restart the device subsystem (print spooler)."""

    CLEAR_QUEUE = "clear_queue"
    """Purge all pending jobs for one device."""

    FIX_DEVICE = "fix_device"
    """Composite remediation: restart, clear queue, verify status."""

    TEST_OUTPUT = "test_output"
    """Send a diagnostic test job to one device."""

    GET_STATUS = "get_status"
    """Report device status without changing anything."""

    INSTALL_DRIVER = "install_driver"
    """Install a driver package from a local path."""

    UPDATE_DRIVER = "update_driver"
    """Download a driver package and install it for one device."""


LEGACY_ALIASES = {
    "restart_spooler": CommandNames.RESTART_SUBSYSTEM,
    "fix_printer": CommandNames.FIX_DEVICE,
    "test_print": CommandNames.TEST_OUTPUT,
}


def normalize_kind(kind: str) -> str:
    """Map legacy names onto their canonical kind; unknown kinds pass through."""
    key = kind.strip().lower()
    return LEGACY_ALIASES.get(key, key)
