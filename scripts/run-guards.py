#!/usr/bin/env python3
"""
Run guards for the auto-phases runner.

Side channels that must never change the outcome of a run:
- Slack status messages (optional, configured per project)
- Desktop notifications (osascript / notify-send / PowerShell toast)
- Sleep prevention held for the whole run

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import os
import platform
import shutil
import subprocess
import urllib.request
from pathlib import Path
from typing import Optional

import yaml

# Slack notification configuration (relative to the project root)
SLACK_CONFIG_PATH = ".claude/slack.local.yaml"
SLACK_POST_URL = "https://slack.com/api/chat.postMessage"
SLACK_TIMEOUT_SECONDS = 10
SLACK_TEXT_MAX_LENGTH = 2900
SLACK_LEVEL_EMOJI = {
    "info": ":large_blue_circle:",
    "success": ":white_check_mark:",
    "error": ":x:",
    "warning": ":warning:",
    "question": ":question:",
}

DESKTOP_NOTIFY_TIMEOUT_SECONDS = 5
NOTIFICATION_TITLE = "Auto-Phases"

# Windows SetThreadExecutionState flags
ES_CONTINUOUS = 0x80000000
ES_SYSTEM_REQUIRED = 0x00000001

INHIBITOR_STOP_TIMEOUT_SECONDS = 5


class SlackNotifier:
    """Sends status messages to Slack via the Web API.

    Reads .claude/slack.local.yaml on init. If the file is missing or
    slack.enabled is false, all methods are no-ops (silent, no errors).
    """

    def __init__(self, config_path: str = SLACK_CONFIG_PATH):
        self._enabled = False
        self._bot_token = ""
        self._channel_id = ""

        try:
            with open(config_path, "r") as f:
                config = yaml.safe_load(f)

            if not isinstance(config, dict):
                return

            slack_config = config.get("slack", {})
            if not isinstance(slack_config, dict):
                return

            self._enabled = bool(slack_config.get("enabled", False))
            if not self._enabled:
                return

            self._bot_token = slack_config.get("bot_token", "")
            self._channel_id = slack_config.get("channel_id", "")

        except (IOError, yaml.YAMLError):
            # Config file missing or invalid - remain disabled
            pass

    def is_enabled(self) -> bool:
        return self._enabled

    @staticmethod
    def _truncate(text: str, max_length: int = SLACK_TEXT_MAX_LENGTH) -> str:
        """Keep Block Kit section text under Slack's per-block limit."""
        if len(text) <= max_length:
            return text
        omitted = len(text) - max_length
        marker = f"\n... ({omitted} chars omitted)"
        return text[:max_length - len(marker)] + marker

    def _build_status_block(self, message: str, level: str) -> dict:
        """Build a Slack Block Kit payload for a status message.

        Args:
            message: Message text (supports Slack markdown)
            level: Message level (info, success, error, warning, question)

        Returns:
            Slack Block Kit payload dict
        """
        emoji = SLACK_LEVEL_EMOJI.get(level, ":large_blue_circle:")
        return {
            "blocks": [{
                "type": "section",
                "text": {"type": "mrkdwn", "text": self._truncate(f"{emoji} {message}")}
            }]
        }

    def _post_message(self, payload: dict) -> bool:
        """POST a message to Slack via chat.postMessage.

        Catches all exceptions and returns False instead of raising.
        """
        if not self._bot_token or not self._channel_id:
            return False

        payload["channel"] = self._channel_id

        try:
            req = urllib.request.Request(
                SLACK_POST_URL,
                data=json.dumps(payload).encode("utf-8"),
                headers={
                    "Content-Type": "application/json; charset=utf-8",
                    "Authorization": f"Bearer {self._bot_token}"
                }
            )

            with urllib.request.urlopen(req, timeout=SLACK_TIMEOUT_SECONDS) as resp:
                result = json.loads(resp.read())
                return result.get("ok", False)

        except Exception as e:
            print(f"[SLACK] Failed to post message: {e}")
            return False

    def send_status(self, message: str, level: str = "info") -> None:
        """Send a status update to Slack. No-op if disabled."""
        if not self._enabled or not self._bot_token or not self._channel_id:
            return

        payload = self._build_status_block(message, level)
        self._post_message(payload)


def _applescript_quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _powershell_quote(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def build_desktop_notify_command(
    title: str, message: str, system: Optional[str] = None
) -> Optional[list[str]]:
    """Build the platform command that shows a desktop notification.

    Returns None when the platform has no supported notifier installed.
    """
    system = system or platform.system()

    if system == "Darwin":
        if not shutil.which("osascript"):
            return None
        script = (
            f"display notification {_applescript_quote(message)} "
            f"with title {_applescript_quote(title)}"
        )
        return ["osascript", "-e", script]

    if system == "Windows":
        powershell = shutil.which("powershell") or shutil.which("pwsh")
        if not powershell:
            return None
        script = (
            "[Windows.UI.Notifications.ToastNotificationManager, Windows.UI.Notifications, "
            "ContentType = WindowsRuntime] | Out-Null; "
            "$xml = [Windows.UI.Notifications.ToastNotificationManager]::"
            "GetTemplateContent([Windows.UI.Notifications.ToastTemplateType]::ToastText02); "
            "$text = $xml.GetElementsByTagName('text'); "
            f"$text.Item(0).AppendChild($xml.CreateTextNode({_powershell_quote(title)})) | Out-Null; "
            f"$text.Item(1).AppendChild($xml.CreateTextNode({_powershell_quote(message)})) | Out-Null; "
            "$toast = [Windows.UI.Notifications.ToastNotification]::new($xml); "
            "[Windows.UI.Notifications.ToastNotificationManager]::"
            f"CreateToastNotifier({_powershell_quote(title)}).Show($toast)"
        )
        return [powershell, "-NoProfile", "-NonInteractive", "-Command", script]

    if not shutil.which("notify-send"):
        return None
    return ["notify-send", title, message]


def send_desktop_notification(title: str, message: str) -> None:
    """Show a desktop notification. Silently ignored on failure."""
    cmd = build_desktop_notify_command(title, message)
    if cmd is None:
        return
    try:
        subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
            timeout=DESKTOP_NOTIFY_TIMEOUT_SECONDS,
        )
    except Exception:  # noqa: BLE001
        pass


class Notifier:
    """Fire-and-forget fan-out to the desktop and Slack.

    Delivery failures are caught here and discarded; callers never see them.
    """

    def __init__(
        self,
        project_root: Path,
        desktop_enabled: bool = True,
        slack: Optional[SlackNotifier] = None,
    ):
        self.desktop_enabled = desktop_enabled
        self.slack = slack or SlackNotifier(str(Path(project_root) / SLACK_CONFIG_PATH))

    def notify(self, title: str, message: str, level: str = "info") -> None:
        if self.desktop_enabled:
            try:
                send_desktop_notification(f"{NOTIFICATION_TITLE}: {title}", message)
            except Exception:  # noqa: BLE001
                pass
        try:
            self.slack.send_status(f"*{title}*\n{message}", level=level)
        except Exception:  # noqa: BLE001
            pass


class SleepInhibitor:
    """Keeps the machine awake while a run is in progress.

    macOS uses caffeinate tied to this process, Linux uses systemd-inhibit
    holding a sleeping child, Windows uses SetThreadExecutionState. When no
    mechanism is available the guard is a no-op.
    """

    def __init__(self, reason: str = "auto-phases run in progress",
                 enabled: bool = True, system: Optional[str] = None):
        self.reason = reason
        self.enabled = enabled
        self.system = system or platform.system()
        self.mechanism: Optional[str] = None
        self._process: Optional[subprocess.Popen] = None

    @property
    def active(self) -> bool:
        return self.mechanism is not None

    def _inhibit_command(self) -> Optional[list[str]]:
        if self.system == "Darwin":
            caffeinate = shutil.which("caffeinate")
            if caffeinate:
                return [caffeinate, "-dims", "-w", str(os.getpid())]
            return None
        if self.system == "Linux":
            inhibit = shutil.which("systemd-inhibit")
            if inhibit:
                return [
                    inhibit, "--what=idle:sleep", "--who=auto-phases",
                    f"--why={self.reason}", "--mode=block",
                    "sleep", "infinity",
                ]
        return None

    def acquire(self) -> bool:
        """Start preventing sleep. Returns True if a mechanism is held."""
        if not self.enabled or self.active:
            return self.active

        if self.system == "Windows":
            try:
                import ctypes
                ctypes.windll.kernel32.SetThreadExecutionState(
                    ES_CONTINUOUS | ES_SYSTEM_REQUIRED
                )
                self.mechanism = "SetThreadExecutionState"
            except (AttributeError, OSError):
                self.mechanism = None
            return self.active

        cmd = self._inhibit_command()
        if cmd is None:
            return False
        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            self.mechanism = os.path.basename(cmd[0])
        except OSError:
            self._process = None
            self.mechanism = None
        return self.active

    def release(self) -> None:
        """Stop preventing sleep. Safe to call more than once."""
        if not self.active:
            return

        if self.mechanism == "SetThreadExecutionState":
            try:
                import ctypes
                ctypes.windll.kernel32.SetThreadExecutionState(ES_CONTINUOUS)
            except (AttributeError, OSError):
                pass
        elif self._process is not None and self._process.poll() is None:
            self._process.terminate()
            try:
                self._process.wait(timeout=INHIBITOR_STOP_TIMEOUT_SECONDS)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()

        self._process = None
        self.mechanism = None

    def __enter__(self) -> "SleepInhibitor":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
