"""
ADB Hub core: adb process layer and network discovery
"""
