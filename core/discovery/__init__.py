"""
Discovery Package

mDNS browsing for adb wireless-debugging services.
"""
from .device_discovery import DeviceDiscovery

__all__ = [
    'DeviceDiscovery',
]
