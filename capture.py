"""Acquire a base image: the main display via mss, or a region via the OS selector."""

from __future__ import annotations

import subprocess
import threading
from typing import Callable

import mss
from PySide6.QtCore import QObject, Qt, QTimer, Signal
from PySide6.QtGui import QImage

from log import get_logger
from platform_utils import clear_clipboard, read_clipboard_image, region_capture_command

log = get_logger("capture")

FULLSCREEN = "fullscreen"
REGION = "region"
CANCELLED = "cancelled"

DEFAULT_HIDE_DELAY_MS = 200
REGION_TOOL_TIMEOUT = 300


class CaptureFailed(Exception):
  """The capture tool failed, was missing, or was denied permission."""


class SelectionCancelled(CaptureFailed):
  """The user dismissed the region selector."""


class ClipboardReadFailed(CaptureFailed):
  """The region selector finished but left no image on the clipboard."""


def grab_main_display() -> QImage:
  """Grab the primary display at native resolution."""
  try:
    with mss.mss() as sct:
      monitors = sct.monitors
      # monitors[0] is the union of all displays, [1] the primary one
      monitor = monitors[1] if len(monitors) > 1 else monitors[0]
      raw = sct.grab(monitor)
      image = QImage(
        bytes(raw.bgra), raw.width, raw.height, QImage.Format.Format_RGB32,
      ).copy()
  except Exception as e:
    raise CaptureFailed(f"Screenshot failed: {e}") from e
  log.debug("Grabbed main display %dx%d", image.width(), image.height())
  return image


def run_region_tool(command: list[str] | None = None,
                    timeout: float = REGION_TOOL_TIMEOUT) -> None:
  """Run the interactive region selector and wait for it to exit."""
  command = command or region_capture_command()
  if not command:
    raise CaptureFailed("No interactive region capture tool is available on this system")
  log.debug("Running region tool: %s", " ".join(command))
  try:
    proc = subprocess.run(command, capture_output=True, timeout=timeout)
  except subprocess.TimeoutExpired as e:
    raise CaptureFailed(f"{command[0]} did not finish within {timeout:.0f}s") from e
  except OSError as e:
    raise CaptureFailed(f"Could not run {command[0]}: {e}") from e

  if proc.returncode != 0:
    stderr = proc.stderr.decode(errors="replace").strip() if proc.stderr else ""
    if not stderr:
      raise SelectionCancelled(f"{command[0]} exited with status {proc.returncode}")
    raise CaptureFailed(f"{command[0]} failed: {stderr}")


def image_from_clipboard() -> QImage:
  image = read_clipboard_image()
  if image is None:
    raise ClipboardReadFailed("Region capture left no image on the clipboard")
  return image


class CaptureRunner(QObject):
  """Runs one capture without blocking the UI thread.

  Sequence: ``on_hide`` -> ``hide_delay_ms`` -> blocking capture on a worker
  thread -> back on the UI thread: clipboard read (region mode), ``on_restore``,
  then ``on_done(image, error=None)``. ``error`` is ``"cancelled"`` when the
  user backed out of the selector.
  """
  _completed = Signal(object, object)

  def __init__(self, mode: str, on_done: Callable[..., None] | None = None,
               hide_delay_ms: int = DEFAULT_HIDE_DELAY_MS,
               on_hide: Callable[[], None] | None = None,
               on_restore: Callable[[], None] | None = None,
               region_command: list[str] | None = None,
               parent: QObject | None = None):
    super().__init__(parent)
    if mode not in (FULLSCREEN, REGION):
      raise ValueError(f"unknown capture mode {mode!r}")
    self.mode = mode
    self.on_done = on_done
    self.hide_delay_ms = hide_delay_ms
    self.on_hide = on_hide
    self.on_restore = on_restore
    self.region_command = region_command
    self._completed.connect(self._finish, Qt.ConnectionType.QueuedConnection)

  def start(self) -> None:
    if self.on_hide:
      self.on_hide()
    if self.mode == REGION:
      clear_clipboard()
    # Best effort: gives the window manager time to unmap our windows.
    QTimer.singleShot(self.hide_delay_ms, self._launch)

  def _launch(self) -> None:
    threading.Thread(
      target=self._work, name=f"markshot-capture-{self.mode}", daemon=True,
    ).start()

  def _work(self) -> None:
    """Worker thread body. Only signals cross back to the UI thread."""
    try:
      if self.mode == FULLSCREEN:
        image = grab_main_display()
      else:
        run_region_tool(self.region_command)
        image = None
    except SelectionCancelled as e:
      log.info("Region selection cancelled: %s", e)
      self._completed.emit(None, CANCELLED)
      return
    except CaptureFailed as e:
      log.error("Capture failed: %s", e)
      self._completed.emit(None, str(e))
      return
    self._completed.emit(image, None)

  def _finish(self, image: QImage | None, error: str | None) -> None:
    if error is None and self.mode == REGION:
      try:
        image = image_from_clipboard()
      except ClipboardReadFailed as e:
        log.warning("%s", e)
        error = CANCELLED

    if self.on_restore:
      self.on_restore()
    if self.on_done:
      self.on_done(image if error is None else None, error=error)
