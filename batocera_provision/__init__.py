"""Batocera SD card provisioning tool.

This package flashes a prebuilt Batocera image to a removable SD card,
repairs the SHARE partition that the raw write leaves without a mount point
or label, and copies personal BIOS/ROM trees onto it.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
