"""
ADB Package

Process runner, output parser, executable locator and the typed adb client.
"""
from .adb_bridge import ADBBridge, ApkInstallHandle
from .adb_locator import AdbLocator, get_adb_locator
from .shell_executor import ShellExecutor, ShellResult, StreamingProcess

__all__ = [
    'ADBBridge',
    'ApkInstallHandle',
    'AdbLocator',
    'get_adb_locator',
    'ShellExecutor',
    'ShellResult',
    'StreamingProcess',
]
