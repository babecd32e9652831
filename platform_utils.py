"""Platform-specific helpers: DPI, clipboard image channel, region tool, folders."""

from __future__ import annotations

import os
import platform
import shutil

from PySide6.QtGui import QImage
from PySide6.QtWidgets import QApplication

SYSTEM = platform.system()

# Interactive region selectors that leave their result on the clipboard.
# Checked in order; the first one whose executables are all present wins.
_LINUX_REGION_TOOLS = (
  (("gnome-screenshot",), ["gnome-screenshot", "-a", "-c"]),
  (("spectacle",), ["spectacle", "-b", "-n", "-r", "-c"]),
  (("grim", "slurp", "wl-copy"),
   ["sh", "-c", 'grim -g "$(slurp)" - | wl-copy --type image/png']),
)


def set_dpi_awareness():
  """Set DPI awareness on Windows so mss grabs physical pixels."""
  if SYSTEM == "Windows":
    import ctypes
    ctypes.windll.shcore.SetProcessDpiAwareness(2)


def region_capture_command() -> list[str] | None:
  """Command line for the interactive region selector, or None if unavailable.

  macOS: screencapture (interactive, no shadow, to clipboard)
  Linux: gnome-screenshot, spectacle, or grim + slurp + wl-copy on Wayland
  """
  if SYSTEM == "Darwin":
    return ["screencapture", "-i", "-o", "-c"]
  if SYSTEM == "Linux":
    for needed, command in _LINUX_REGION_TOOLS:
      if all(shutil.which(exe) for exe in needed):
        return list(command)
  return None


def clear_clipboard() -> None:
  """Empty the clipboard so a stale image is never mistaken for a new capture."""
  QApplication.clipboard().clear()


def read_clipboard_image() -> QImage | None:
  """Return the clipboard's image, or None when it holds no image.

  Must be called on the UI thread.
  """
  image = QApplication.clipboard().image()
  if image.isNull():
    return None
  return image


def default_save_folder():
  """Return a sensible default export folder per platform."""
  home = os.path.expanduser("~")

  if SYSTEM == "Windows":
    onedrive = os.path.join(home, "OneDrive", "Pictures", "Screenshots")
    if os.path.isdir(onedrive):
      return "~/OneDrive/Pictures/Screenshots"
    return "~/Pictures/Screenshots"
  elif SYSTEM == "Darwin":
    return "~/Desktop"
  else:
    return "~/Pictures/Screenshots"
