from __future__ import annotations

import os
import platform
import subprocess
import sys
from typing import Any, IO

from PySide6.QtCore import Qt, QObject, QTimer, Signal
from PySide6.QtGui import QIcon, QPixmap, QPainter, QColor, QCursor
from PySide6.QtWidgets import (
  QApplication, QSystemTrayIcon, QMenu, QFileDialog, QWidget,
)

from annotations import DEFAULT_COLOR, DEFAULT_FONT_SIZE, DEFAULT_TOOL
from capture import CANCELLED, DEFAULT_HIDE_DELAY_MS, FULLSCREEN, REGION, CaptureRunner
from compositor import ExportError, ExportJob, composite, default_export_filename
from editor import EditorWindow
from log import get_logger
from platform_utils import default_save_folder, set_dpi_awareness
from session import CaptureSession

log = get_logger("main")

APP_NAME = "MarkShot"

# Letters only: with Shift held the listener reports the shifted character,
# so a digit would arrive as '!' or '@' and never match.
if platform.system() == "Darwin":
  DEFAULT_HOTKEY_FULLSCREEN = "<cmd>+<shift>+f"
  DEFAULT_HOTKEY_REGION = "<cmd>+<shift>+r"
else:
  DEFAULT_HOTKEY_FULLSCREEN = "<ctrl>+<shift>+f"
  DEFAULT_HOTKEY_REGION = "<ctrl>+<shift>+r"

DEFAULT_FILENAME_PREFIX = "Screenshot"
DEFAULT_FILENAME_SUFFIX = "%Y-%m-%d_%H-%M-%S"

# Built-in settings. Nothing is read from or written to disk.
DEFAULT_SETTINGS = {
  "save_folder": default_save_folder(),
  "hotkey_fullscreen": DEFAULT_HOTKEY_FULLSCREEN,
  "hotkey_region": DEFAULT_HOTKEY_REGION,
  "filename_prefix": DEFAULT_FILENAME_PREFIX,
  "filename_suffix": DEFAULT_FILENAME_SUFFIX,
  "default_tool": DEFAULT_TOOL.value,
  "default_color": DEFAULT_COLOR.name(QColor.NameFormat.HexArgb),
  "default_font_size": DEFAULT_FONT_SIZE,
  "hide_delay_ms": DEFAULT_HIDE_DELAY_MS,
}


# Tray icon geometry (64x64 canvas)
_ICON_SIZE = 64
_ICON_BODY_COLOR = "#37474F"
_ICON_LENS_COLOR = "white"
_ICON_MARK_COLOR = "#FFD600"
_ICON_BODY_RECT = (4, 18, 56, 38)
_ICON_BODY_RADIUS = 8
_ICON_LENS = (20, 24, 24, 24)
_ICON_BUMP_RECT = (22, 10, 20, 10)
_ICON_MARK_RECT = (40, 40, 20, 20)


def create_tray_icon() -> QIcon:
  """Paint a camera with a highlighter mark in the corner."""
  pixmap = QPixmap(_ICON_SIZE, _ICON_SIZE)
  pixmap.fill(QColor(0, 0, 0, 0))

  painter = QPainter(pixmap)
  painter.setRenderHint(QPainter.RenderHint.Antialiasing)
  painter.setPen(Qt.PenStyle.NoPen)

  painter.setBrush(QColor(_ICON_BODY_COLOR))
  painter.drawRoundedRect(*_ICON_BODY_RECT, _ICON_BODY_RADIUS, _ICON_BODY_RADIUS)
  painter.drawRect(*_ICON_BUMP_RECT)

  painter.setBrush(QColor(_ICON_LENS_COLOR))
  painter.drawEllipse(*_ICON_LENS)

  mark = QColor(_ICON_MARK_COLOR)
  mark.setAlpha(220)
  painter.setBrush(mark)
  painter.drawRect(*_ICON_MARK_RECT)

  painter.end()
  return QIcon(pixmap)


class HotkeyBridge(QObject):
  """Bridge pynput hotkey events to Qt's main thread via signals."""
  fullscreen_triggered = Signal()
  region_triggered = Signal()


def format_hotkey_display(pynput_str: str) -> str:
  """'<cmd>+<shift>+f' -> 'Cmd + Shift + F'"""
  if not pynput_str:
    return ""
  nice = []
  for p in pynput_str.split("+"):
    p = p.strip()
    if p.startswith("<") and p.endswith(">"):
      nice.append(p[1:-1].capitalize())
    else:
      nice.append(p.upper())
  return " + ".join(nice)


def ask_save_path(parent: QWidget | None, suggested_path: str) -> str | None:
  """Native save dialog restricted to PNG. None when the user cancels."""
  path, _selected = QFileDialog.getSaveFileName(
    parent, "Save Annotated Screenshot", suggested_path, "PNG Image (*.png)",
  )
  if not path:
    return None
  if not path.lower().endswith(".png"):
    path += ".png"
  return path


class MarkShot:
  def __init__(self, settings: dict[str, Any] | None = None) -> None:
    self.settings: dict[str, Any] = {**DEFAULT_SETTINGS, **(settings or {})}
    self.session = CaptureSession(
      tool=self.settings["default_tool"],
      color=self.settings["default_color"],
      font_size=self.settings["default_font_size"],
    )
    self.capturing: bool = False
    self.tray_icon: QSystemTrayIcon | None = None
    self._listener = None
    self._runner: CaptureRunner | None = None
    # Every job stays referenced until its result has been delivered
    self._export_jobs: set[ExportJob] = set()
    self._editor: EditorWindow | None = None
    self._editor_was_visible = False
    self._last_export_path: str | None = None

    self.session.add_listener(self._on_session_changed)

  # -- Editor -----------------------------------------------------------------

  def _ensure_editor(self) -> EditorWindow:
    if self._editor is None:
      self._editor = EditorWindow(self.session, on_save=self.save_annotated)
    return self._editor

  def _on_session_changed(self, session: CaptureSession) -> None:
    if self.capturing:
      return
    if session.is_editing:
      editor = self._ensure_editor()
      if not editor.isVisible():
        editor.show()

  def open_editor(self) -> None:
    """Reopen the editor on the latest capture (tray menu)."""
    if not self.session.resume_editing():
      log.debug("No capture to edit")

  # -- Capture ----------------------------------------------------------------

  def trigger_fullscreen(self) -> None:
    """Capture the main display."""
    self._start_capture(FULLSCREEN)

  def trigger_region(self) -> None:
    """Let the user select a region with the system selector."""
    self._start_capture(REGION)

  def _start_capture(self, mode: str) -> None:
    if self.capturing:
      return
    self.capturing = True
    self._runner = CaptureRunner(
      mode,
      on_done=self._on_capture_done,
      hide_delay_ms=max(0, int(self.settings["hide_delay_ms"])),
      on_hide=self._hide_ui,
      on_restore=self._restore_ui,
    )
    self._runner.start()

  def _hide_ui(self) -> None:
    self._editor_was_visible = self._editor is not None and self._editor.isVisible()
    if self._editor_was_visible:
      self._editor.hide()

  def _restore_ui(self) -> None:
    if self._editor_was_visible and self.session.is_editing:
      self._editor.show()
    self._editor_was_visible = False

  def _on_capture_done(self, image, error: str | None = None) -> None:
    self.capturing = False

    # User cancelled -- keep whatever session we had, no notification
    if error == CANCELLED:
      return

    if error:
      log.error("Capture error: %s", error)
      self._notify(error, QSystemTrayIcon.MessageIcon.Critical, 4000)
      return

    log.info("Captured %dx%d", image.width(), image.height())
    self.session.set_base_image(image)

  # -- Export -----------------------------------------------------------------

  def save_annotated(self) -> None:
    """Ask for a destination and write the flattened PNG in the background."""
    if not self.session.has_image:
      return
    folder = os.path.expanduser(self.settings["save_folder"])
    name = default_export_filename(
      self.settings["filename_prefix"],
      self.settings["filename_suffix"],
    )
    path = ask_save_path(self._editor, os.path.join(folder, name))
    if path is None:
      log.debug("Save cancelled")
      return

    try:
      image = composite(self.session)
    except ExportError as e:
      self._on_export_done(None, error=str(e))
      return

    job = ExportJob(image, path, on_done=self._on_export_done)
    self._export_jobs.add(job)
    job.start()

  def _forget_finished_exports(self) -> None:
    self._export_jobs = {job for job in self._export_jobs if not job.done}

  def _on_export_done(self, filepath: str | None, error: str | None = None) -> None:
    # Runs inside the job's own slot; release it once that slot has returned
    QTimer.singleShot(0, self._forget_finished_exports)
    if error:
      log.error("Export error: %s", error)
      self._notify(f"Save failed: {error}", QSystemTrayIcon.MessageIcon.Critical, 5000)
      return
    self._last_export_path = filepath
    log.info("Saved: %s", filepath)
    self._notify(os.path.basename(filepath), QSystemTrayIcon.MessageIcon.Information, 3000)

  def _notify(self, message: str, icon: QSystemTrayIcon.MessageIcon, msecs: int) -> None:
    if self.tray_icon:
      self.tray_icon.showMessage(APP_NAME, message, icon, msecs)

  def _on_notification_clicked(self) -> None:
    """Reveal the most recent export in the file manager."""
    if self._last_export_path and os.path.exists(self._last_export_path):
      self._show_in_explorer(self._last_export_path)

  @staticmethod
  def _show_in_explorer(filepath: str) -> None:
    try:
      system = platform.system()
      if system == "Windows":
        subprocess.Popen(["explorer", "/select,", os.path.normpath(filepath)])
      elif system == "Darwin":
        subprocess.Popen(["open", "-R", filepath])
      else:
        subprocess.Popen(["xdg-open", os.path.dirname(filepath)])
    except OSError as e:
      log.warning("Failed to open file explorer: %s", e)

  # -- Hotkeys ----------------------------------------------------------------

  def _start_hotkey_listener(self) -> None:
    # pynput picks its backend at import time and fails without a display
    from pynput import keyboard

    fullscreen_str = self.settings["hotkey_fullscreen"]
    region_str = self.settings["hotkey_region"]

    def _parse_hotkey(hotkey_str, default_str, signal):
      try:
        return keyboard.HotKey(keyboard.HotKey.parse(hotkey_str), signal)
      except ValueError as e:
        log.error("Invalid hotkey '%s': %s -- using default '%s'", hotkey_str, e, default_str)
        return keyboard.HotKey(keyboard.HotKey.parse(default_str), signal)

    hotkeys = [
      _parse_hotkey(fullscreen_str, DEFAULT_HOTKEY_FULLSCREEN,
                    self.hotkey_bridge.fullscreen_triggered.emit),
      _parse_hotkey(region_str, DEFAULT_HOTKEY_REGION,
                    self.hotkey_bridge.region_triggered.emit),
    ]

    def on_press(k):
      key = self._listener.canonical(k)
      for hotkey in hotkeys:
        hotkey.press(key)

    def on_release(k):
      key = self._listener.canonical(k)
      for hotkey in hotkeys:
        hotkey.release(key)

    self._listener = keyboard.Listener(on_press=on_press, on_release=on_release)
    self._listener.start()
    log.debug("Hotkey listener started (fullscreen=%s, region=%s)",
      fullscreen_str, region_str)

  def _stop_hotkey_listener(self) -> None:
    if self._listener is None:
      return
    try:
      self._listener.stop()
    except Exception as e:
      log.warning("Failed to stop hotkey listener: %s", e)
    self._listener = None

  # -- Tray -------------------------------------------------------------------

  def _rebuild_tray_menu(self) -> None:
    self.tray_menu.clear()

    fullscreen_hk = format_hotkey_display(self.settings["hotkey_fullscreen"])
    region_hk = format_hotkey_display(self.settings["hotkey_region"])

    fullscreen_action = self.tray_menu.addAction("Capture Full Screen  (%s)" % fullscreen_hk)
    fullscreen_action.triggered.connect(self.trigger_fullscreen)
    fullscreen_action.setEnabled(not self.capturing)

    region_action = self.tray_menu.addAction("Capture Selection  (%s)" % region_hk)
    region_action.triggered.connect(self.trigger_region)
    region_action.setEnabled(not self.capturing)

    if self.session.has_image:
      self.tray_menu.addSeparator()
      thumb = QPixmap.fromImage(self.session.base_image).scaledToHeight(
        48, Qt.TransformationMode.SmoothTransformation,
      )
      edit_action = self.tray_menu.addAction(QIcon(thumb), "Edit Latest Screenshot")
      edit_action.triggered.connect(self.open_editor)

    self.tray_menu.addSeparator()
    quit_action = self.tray_menu.addAction("Quit")
    quit_action.triggered.connect(self.app.quit)

  def _on_tray_activated(self, reason: QSystemTrayIcon.ActivationReason) -> None:
    if reason == QSystemTrayIcon.ActivationReason.Trigger and platform.system() != "Darwin":
      self.tray_menu.popup(QCursor.pos())

  def run(self) -> None:
    self.app = QApplication(sys.argv)
    self.app.setApplicationName(APP_NAME)
    self.app.setQuitOnLastWindowClosed(False)

    # Hotkey bridge: pynput thread -> Qt main thread
    self.hotkey_bridge = HotkeyBridge()
    self.hotkey_bridge.fullscreen_triggered.connect(
      self.trigger_fullscreen, Qt.ConnectionType.QueuedConnection,
    )
    self.hotkey_bridge.region_triggered.connect(
      self.trigger_region, Qt.ConnectionType.QueuedConnection,
    )

    self.tray_icon = QSystemTrayIcon(create_tray_icon(), self.app)
    self.tray_icon.setToolTip(APP_NAME)

    self.tray_menu = QMenu()
    self.tray_menu.aboutToShow.connect(self._rebuild_tray_menu)
    self.tray_icon.setContextMenu(self.tray_menu)
    self.tray_icon.activated.connect(self._on_tray_activated)
    self.tray_icon.messageClicked.connect(self._on_notification_clicked)
    self.tray_icon.show()

    try:
      self._start_hotkey_listener()
    except Exception as e:
      log.error("Global hotkeys unavailable: %s", e)
      self._notify("Global hotkeys are unavailable; use the tray menu.",
        QSystemTrayIcon.MessageIcon.Warning, 5000)

    self.app.aboutToQuit.connect(self._shutdown)

    log.info("%s running (fullscreen=%s, region=%s)", APP_NAME,
      self.settings["hotkey_fullscreen"], self.settings["hotkey_region"])

    exit_code = self.app.exec()
    sys.exit(exit_code)

  def _shutdown(self) -> None:
    """Clean up resources before the application exits."""
    self._stop_hotkey_listener()
    log.info("%s exiting", APP_NAME)


def acquire_single_instance() -> IO[str]:
  """Hold an exclusive lock so only one MarkShot runs per user.

  The OS drops the lock when the process dies, so a crashed instance never
  blocks the next start.
  """
  import tempfile
  lock_path = os.path.join(tempfile.gettempdir(), "markshot.lock")
  lock_file = open(lock_path, "a+")
  try:
    if sys.platform == "win32":
      import msvcrt
      lock_file.seek(0)
      msvcrt.locking(lock_file.fileno(), msvcrt.LK_NBLCK, 1)
    else:
      import fcntl
      fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
  except OSError:
    lock_file.close()
    log.info("Another instance is already running, exiting")
    sys.exit(0)

  lock_file.seek(0)
  lock_file.truncate()
  lock_file.write(str(os.getpid()))
  lock_file.flush()
  return lock_file


def main() -> None:
  lock = acquire_single_instance()
  set_dpi_awareness()
  try:
    MarkShot().run()
  finally:
    lock.close()


if __name__ == "__main__":
  main()
