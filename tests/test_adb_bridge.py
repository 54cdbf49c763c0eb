"""ADBBridge against a scripted executor: argument shapes and output classification."""

import asyncio

import pytest

from core.adb.adb_bridge import (
    INSTALL_TIMEOUT,
    ADBBridge,
    ApkInstallHandle,
    parse_install_error,
    validate_package_name,
)
from core.adb.shell_executor import StreamResult
from device_models import AndroidKeyCode, AppListFilter, ConnectionType, InstallOutcome
from utils.error_handler import (
    ADBNotFoundError,
    ADBTimeoutError,
    AppActionFailedError,
    AppNotFoundError,
    CommandFailedError,
    ConnectionFailedError,
    DeviceNotFoundError,
    DeviceOfflineError,
    DeviceUnauthorizedError,
    InstallFailedError,
    PairingFailedError,
    ParseError,
    UninstallFailedError,
)

from conftest import FAKE_ADB

SERIAL = "R58M123ABC"


# =============================================================================
# Devices and transports
# =============================================================================

@pytest.mark.asyncio
async def test_list_devices(bridge, fake_executor):
    fake_executor.script(["devices", "-l"], output=(
        "List of devices attached\n"
        "192.168.1.5:5555 device product:redfin model:Pixel_5 transport_id:3\n"
        "R58M123ABC unauthorized usb:1-1 transport_id:1\n"
    ))
    devices = await bridge.list_devices()
    assert [d.transport_kind for d in devices] == [ConnectionType.WIFI, ConnectionType.USB]
    assert fake_executor.calls[0][0] == FAKE_ADB


@pytest.mark.asyncio
@pytest.mark.parametrize("output", [
    "connected to 192.168.1.5:5555",
    "already connected to 192.168.1.5:5555",
])
async def test_connect_success(bridge, fake_executor, output):
    fake_executor.script(["connect", "192.168.1.5:5555"], output=output)
    await bridge.connect("192.168.1.5:5555")


@pytest.mark.asyncio
async def test_connect_failure_text_beats_zero_exit_code(bridge, fake_executor):
    fake_executor.script(
        ["connect", "192.168.1.5:5555"],
        output="failed to connect to '192.168.1.5:5555': Connection refused",
        exit_code=0,
    )
    with pytest.raises(ConnectionFailedError) as exc_info:
        await bridge.connect("192.168.1.5:5555")
    assert "Connection refused" in exc_info.value.reason


@pytest.mark.asyncio
async def test_connect_falls_back_to_exit_code(bridge, fake_executor):
    fake_executor.script(["connect", "10.0.0.2:5555"], output="", error_output="weird", exit_code=1)
    with pytest.raises(ConnectionFailedError):
        await bridge.connect("10.0.0.2:5555")


@pytest.mark.asyncio
async def test_pair_success(bridge, fake_executor):
    fake_executor.script(
        ["pair", "192.168.1.5:37123", "123456"],
        output="Successfully paired to 192.168.1.5:37123 [guid=adb-R58M123ABC-xYz12a]",
    )
    await bridge.pair("192.168.1.5:37123", "123456")


@pytest.mark.asyncio
@pytest.mark.parametrize("output,expected", [
    ("Failed: Unable to start pairing client. wrong password",
     "Incorrect pairing code. Please check the code and try again."),
    ("error: protocol fault (couldn't read status message): Success",
     "Pairing code expired or connection interrupted. "
     "Please generate a new code on your device and try again."),
    ("Failed: Unable to start pairing client. Connection refused",
     "Connection refused. Ensure Wireless Debugging is enabled and the device is in pairing mode."),
    ("failed to connect: No route to host",
     "Cannot reach device. Ensure both devices are on the same network."),
])
async def test_pair_known_failures(bridge, fake_executor, output, expected):
    fake_executor.script(["pair", "192.168.1.5:37123", "000000"], output=output, exit_code=1)
    with pytest.raises(PairingFailedError) as exc_info:
        await bridge.pair("192.168.1.5:37123", "000000")
    assert exc_info.value.reason == expected
    assert str(exc_info.value) == f"Pairing failed: {expected}"


@pytest.mark.asyncio
async def test_pair_wrong_password_in_stderr(bridge, fake_executor):
    fake_executor.script(
        ["pair", "192.168.1.5:37123", "111111"],
        output="Enter pairing code:",
        error_output="Failed: wrong password",
        exit_code=0,
    )
    with pytest.raises(PairingFailedError) as exc_info:
        await bridge.pair("192.168.1.5:37123", "111111")
    assert exc_info.value.reason.startswith("Incorrect pairing code")


@pytest.mark.asyncio
async def test_pair_unrecognised_output_with_nonzero_exit(bridge, fake_executor):
    fake_executor.script(["pair", "1.2.3.4:1", "1"], output="something odd", exit_code=2)
    with pytest.raises(PairingFailedError) as exc_info:
        await bridge.pair("1.2.3.4:1", "1")
    assert exc_info.value.reason == "something odd"


@pytest.mark.asyncio
async def test_enable_tcpip_argument_shape(bridge, fake_executor):
    await bridge.enable_tcpip(5555, SERIAL)
    assert fake_executor.args_called() == [("-s", SERIAL, "tcpip", "5555")]


@pytest.mark.asyncio
async def test_enable_tcpip_rejects_bad_port(bridge, fake_executor):
    with pytest.raises(ValueError):
        await bridge.enable_tcpip(70000, SERIAL)
    assert fake_executor.calls == []


# =============================================================================
# Device-state errors and tool resolution
# =============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("stderr,error_type", [
    ("error: device unauthorized.\nThis adb server's $ADB_VENDOR_KEYS is not set", DeviceUnauthorizedError),
    ("error: device offline", DeviceOfflineError),
    ("error: device 'R58M123ABC' not found", DeviceNotFoundError),
    ("error: something else", CommandFailedError),
])
async def test_device_errors_are_classified(bridge, fake_executor, stderr, error_type):
    fake_executor.script(["-s", SERIAL, "shell", "getprop", "ro.serialno"], error_output=stderr, exit_code=1)
    with pytest.raises(error_type):
        await bridge.get_property("ro.serialno", SERIAL)


@pytest.mark.asyncio
async def test_missing_executable_maps_to_tool_not_found(bridge, fake_executor, locator):
    fake_executor.script_error(["devices", "-l"], FileNotFoundError("adb"))
    locator._cached_path = "/stale/adb"
    with pytest.raises(ADBNotFoundError):
        await bridge.list_devices()
    assert locator.cached_path is None


@pytest.mark.asyncio
async def test_timeout_propagates(bridge, fake_executor):
    fake_executor.script_error(["devices", "-l"], ADBTimeoutError("adb devices -l", 10))
    with pytest.raises(ADBTimeoutError):
        await bridge.list_devices()


@pytest.mark.asyncio
async def test_is_adb_available(bridge, fake_executor):
    fake_executor.script(["version"], output="Android Debug Bridge version 1.0.41\nVersion 34.0.5\n")
    assert await bridge.is_adb_available() is True
    assert await bridge.get_version() == "Android Debug Bridge version 1.0.41"

    fake_executor.script_error(["version"], FileNotFoundError("adb"))
    assert await bridge.is_adb_available() is False


@pytest.mark.asyncio
async def test_unrecognised_version_output(bridge, fake_executor):
    fake_executor.script(["version"], output="usage: something else\n")
    with pytest.raises(ParseError):
        await bridge.get_version()


# =============================================================================
# Properties, shell, input, screenshots
# =============================================================================

@pytest.mark.asyncio
async def test_get_properties_concurrently(bridge, fake_executor):
    fake_executor.script(["-s", SERIAL, "shell", "getprop", "ro.product.brand"], output="google\n")
    fake_executor.script(["-s", SERIAL, "shell", "getprop", "ro.build.version.sdk"], output="34\n")
    values = await bridge.get_properties(["ro.product.brand", "ro.build.version.sdk"], SERIAL)
    assert values == {"ro.product.brand": "google", "ro.build.version.sdk": "34"}


@pytest.mark.asyncio
async def test_get_properties_one_failure_fails_all(bridge, fake_executor):
    fake_executor.script(["-s", SERIAL, "shell", "getprop", "a.b"], output="ok")
    fake_executor.script(["-s", SERIAL, "shell", "getprop", "c.d"], error_output="error: device offline", exit_code=1)
    with pytest.raises(DeviceOfflineError):
        await bridge.get_properties(["a.b", "c.d"], SERIAL)


@pytest.mark.asyncio
async def test_input_text_is_escaped(bridge, fake_executor):
    await bridge.input_text("it's me", SERIAL)
    assert fake_executor.args_called() == [("-s", SERIAL, "shell", "input", "text", "it\\'s%sme")]


@pytest.mark.asyncio
async def test_press_key(bridge, fake_executor):
    await bridge.press_key(AndroidKeyCode.HOME, SERIAL)
    assert fake_executor.args_called() == [("-s", SERIAL, "shell", "input", "keyevent", "3")]


@pytest.mark.asyncio
async def test_screenshot_returns_png_bytes(bridge, fake_executor):
    fake_executor.script_raw(["-s", SERIAL, "exec-out", "screencap", "-p"], data=b"\x89PNG...")
    assert await bridge.take_screenshot(SERIAL) == b"\x89PNG..."


@pytest.mark.asyncio
async def test_empty_screenshot_is_an_error(bridge, fake_executor):
    with pytest.raises(CommandFailedError):
        await bridge.take_screenshot(SERIAL)


# =============================================================================
# Port forwards
# =============================================================================

@pytest.mark.asyncio
async def test_reverse_forward_commands(bridge, fake_executor):
    fake_executor.script(["-s", SERIAL, "reverse", "--list"], output="UsbFfs tcp:8081 tcp:8081\n")
    await bridge.create_reverse_forward(8081, 8081, SERIAL)
    forwards = await bridge.list_reverse_forwards(SERIAL)
    await bridge.remove_reverse_forward(8081, SERIAL)
    await bridge.remove_all_reverse_forwards(SERIAL)

    assert fake_executor.args_called() == [
        ("-s", SERIAL, "reverse", "tcp:8081", "tcp:8081"),
        ("-s", SERIAL, "reverse", "--list"),
        ("-s", SERIAL, "reverse", "--remove", "tcp:8081"),
        ("-s", SERIAL, "reverse", "--remove-all"),
    ]
    assert forwards[0].device_id == SERIAL
    assert forwards[0].local_port == 8081


@pytest.mark.asyncio
async def test_reverse_forward_validates_ports(bridge, fake_executor):
    with pytest.raises(ValueError):
        await bridge.create_reverse_forward(0, 8081, SERIAL)
    assert fake_executor.calls == []


# =============================================================================
# Packages
# =============================================================================

@pytest.mark.parametrize("name", ["com.example.app", "a.b", "org.foo_bar.Baz2"])
def test_valid_package_names(name):
    validate_package_name(name)


@pytest.mark.parametrize("name", [
    "example",
    "1com.example",
    "com..example",
    "com.example;reboot",
    "com.example app",
    "com.example.$(id)",
    "com." + "a" * 300,
])
def test_invalid_package_names(name):
    with pytest.raises(AppNotFoundError):
        validate_package_name(name)


@pytest.mark.asyncio
async def test_package_operations_validate_before_running(bridge, fake_executor):
    for operation in (bridge.launch_app, bridge.force_stop_app, bridge.uninstall_app,
                      bridge.disable_app, bridge.enable_app, bridge.open_app_settings,
                      bridge.get_package_info):
        with pytest.raises(AppNotFoundError):
            await operation("bad;name", SERIAL)
    assert fake_executor.calls == []


@pytest.mark.asyncio
async def test_list_packages_flags(bridge, fake_executor):
    fake_executor.script(["-s", SERIAL, "shell", "pm", "list", "packages", "-3"],
                         output="package:com.example.app\n")
    assert await bridge.list_packages(SERIAL, AppListFilter.THIRD_PARTY) == ["com.example.app"]


@pytest.mark.asyncio
async def test_get_package_info(bridge, fake_executor):
    fake_executor.script(["-s", SERIAL, "shell", "dumpsys", "package", "com.example.app"],
                         output="versionName=1.2.3\nversionCode=45 (highest)\n")
    app = await bridge.get_package_info("com.example.app", SERIAL)
    assert (app.version_name, app.version_code) == ("1.2.3", 45)


@pytest.mark.asyncio
async def test_get_package_info_unknown_package(bridge, fake_executor):
    fake_executor.script(["-s", SERIAL, "shell", "dumpsys", "package", "com.missing.app"],
                         output="Unable to find package: com.missing.app\n")
    with pytest.raises(AppNotFoundError):
        await bridge.get_package_info("com.missing.app", SERIAL)


@pytest.mark.asyncio
async def test_uninstall_success_and_keep_data(bridge, fake_executor):
    fake_executor.script(["-s", SERIAL, "uninstall", "-k", "com.example.app"], output="Success\n")
    await bridge.uninstall_app("com.example.app", SERIAL, keep_data=True)


@pytest.mark.asyncio
async def test_uninstall_system_app_message(bridge, fake_executor):
    fake_executor.script(
        ["-s", SERIAL, "uninstall", "com.android.phone"],
        output="Failure [DELETE_FAILED_INTERNAL_ERROR]\n",
        exit_code=0,
    )
    with pytest.raises(UninstallFailedError) as exc_info:
        await bridge.uninstall_app("com.android.phone", SERIAL)
    assert exc_info.value.reason == "Cannot uninstall system app"


@pytest.mark.asyncio
async def test_uninstall_other_failure_surfaces_output(bridge, fake_executor):
    fake_executor.script(
        ["-s", SERIAL, "uninstall", "com.example.app"],
        output="Failure [DELETE_FAILED_DEVICE_POLICY_MANAGER]",
        exit_code=1,
    )
    with pytest.raises(UninstallFailedError) as exc_info:
        await bridge.uninstall_app("com.example.app", SERIAL)
    assert "DELETE_FAILED_DEVICE_POLICY_MANAGER" in exc_info.value.reason


@pytest.mark.asyncio
async def test_disable_and_enable_read_new_state(bridge, fake_executor):
    fake_executor.script(
        ["-s", SERIAL, "shell", "pm", "disable-user", "--user", "0", "com.example.app"],
        output="Package com.example.app new state: disabled-user\n",
        exit_code=1,
    )
    fake_executor.script(
        ["-s", SERIAL, "shell", "pm", "enable", "com.example.app"],
        output="Error: java.lang.SecurityException: Shell cannot change component state",
        exit_code=0,
    )
    await bridge.disable_app("com.example.app", SERIAL)
    with pytest.raises(AppActionFailedError):
        await bridge.enable_app("com.example.app", SERIAL)


@pytest.mark.asyncio
async def test_launch_without_launcher_activity(bridge, fake_executor):
    fake_executor.script(
        ["-s", SERIAL, "shell", "monkey", "-p", "com.example.svc",
         "-c", "android.intent.category.LAUNCHER", "1"],
        output="** No activities found to run, monkey aborted.",
    )
    with pytest.raises(AppActionFailedError):
        await bridge.launch_app("com.example.svc", SERIAL)


@pytest.mark.asyncio
async def test_open_settings_argument_shape(bridge, fake_executor):
    await bridge.open_app_settings("com.example.app", SERIAL)
    assert fake_executor.args_called() == [(
        "-s", SERIAL, "shell", "am", "start",
        "-a", "android.settings.APPLICATION_DETAILS_SETTINGS",
        "-d", "package:com.example.app",
    )]


# =============================================================================
# Install
# =============================================================================

def test_parse_install_error_known_codes():
    assert parse_install_error("Failure [INSTALL_FAILED_VERSION_DOWNGRADE]", "") == "Cannot downgrade app version"
    assert parse_install_error("", "Failure [INSTALL_FAILED_NO_MATCHING_ABIS: x86]") == \
        "APK not compatible with device architecture"


def test_parse_install_error_fallbacks():
    assert parse_install_error("Failure [INSTALL_FAILED_USER_RESTRICTED]", "") == \
        "Failure [INSTALL_FAILED_USER_RESTRICTED]"
    assert parse_install_error("", "adb: failed to stat x.apk") == "adb: failed to stat x.apk"
    assert parse_install_error("", "") == "Unknown installation error"


@pytest.mark.asyncio
async def test_install_rejects_non_apk(bridge, tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("x")
    with pytest.raises(InstallFailedError):
        await bridge.install_apk(str(path), SERIAL)


@pytest.mark.asyncio
async def test_install_rejects_missing_file(bridge, tmp_path):
    with pytest.raises(InstallFailedError):
        await bridge.install_apk(str(tmp_path / "missing.apk"), SERIAL)


class _FakeStream:
    def __init__(self, outcome):
        self._outcome = outcome
        self.cancel_calls = 0
        self.done = True

    def cancel(self):
        self.cancel_calls += 1
        return False

    async def wait(self):
        return self._outcome


@pytest.mark.asyncio
async def test_install_handle_outcomes():
    ok = ApkInstallHandle(_FakeStream(StreamResult("Performing Streamed Install\nSuccess", "", 0)), SERIAL, "a.apk")
    assert await ok.result() == InstallOutcome.SUCCESS

    cancelled = ApkInstallHandle(_FakeStream(StreamResult("", "", -9, cancelled=True)), SERIAL, "a.apk")
    assert await cancelled.result() == InstallOutcome.CANCELLED

    failed = ApkInstallHandle(
        _FakeStream(StreamResult("Failure [INSTALL_FAILED_INSUFFICIENT_STORAGE]", "", 1)), SERIAL, "a.apk"
    )
    with pytest.raises(InstallFailedError) as exc_info:
        await failed.result()
    assert exc_info.value.reason == "Insufficient storage on device"


@pytest.mark.asyncio
async def test_install_streams_progress(tmp_path, locator):
    apk = tmp_path / "app.apk"
    apk.write_bytes(b"PK\x03\x04")
    calls = {}

    class StreamingExecutor:
        async def run_streaming(self, executable, args, on_line=None, timeout=None):
            calls.update(executable=executable, args=args, timeout=timeout)
            on_line("Performing Streamed Install")
            on_line("   ")
            on_line("Success")
            return _FakeStream(StreamResult("Performing Streamed Install\nSuccess", "", 0))

    progress = []
    bridge = ADBBridge(executor=StreamingExecutor(), locator=locator)
    handle = await bridge.install_apk(str(apk), SERIAL, on_progress=progress.append)

    assert calls["args"] == ["-s", SERIAL, "install", "-r", str(apk)]
    assert calls["timeout"] == INSTALL_TIMEOUT
    assert progress == ["Performing Streamed Install", "Success"]
    assert await handle.result() == InstallOutcome.SUCCESS
    # Cancelling after completion does not flip the outcome
    assert handle.cancel() is False
    assert await handle.result() == InstallOutcome.SUCCESS


@pytest.mark.asyncio
async def test_real_install_cancel_race(tmp_path):
    """A finished install stays successful even if cancel() arrives afterwards."""
    import sys

    from core.adb.adb_locator import AdbLocator

    apk = tmp_path / "app.apk"
    apk.write_bytes(b"PK")
    script = tmp_path / "fake_adb.py"
    script.write_text("import sys\nprint('Performing Streamed Install')\nprint('Success')\n")

    class PythonExecutor:
        def __init__(self):
            from core.adb.shell_executor import ShellExecutor
            self._inner = ShellExecutor()

        async def run_streaming(self, executable, args, on_line=None, timeout=None):
            return await self._inner.run_streaming(sys.executable, [str(script), *args], on_line, timeout)

    bridge = ADBBridge(executor=PythonExecutor(), locator=AdbLocator(override_provider=lambda: "adb"))
    handle = await bridge.install_apk(str(apk), SERIAL)
    outcome = await asyncio.wait_for(handle.result(), timeout=20)

    assert outcome == InstallOutcome.SUCCESS
    assert handle.cancel() is False
    assert handle.done
