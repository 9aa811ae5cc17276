"""Adapter modules for device integrations."""

from .shell import ShellDeviceProvider, build_argv, parse_device_listing

__all__ = [
    "ShellDeviceProvider",
    "build_argv",
    "parse_device_listing",
]
