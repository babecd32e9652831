"""Capture session state: the current capture, its annotations and tool settings."""

from __future__ import annotations

import math
from typing import Callable, Union

from PySide6.QtGui import QColor, QImage

from annotations import (
  Annotation, AnnotationKind, DEFAULT_COLOR, DEFAULT_FONT_SIZE, DEFAULT_TOOL,
  FONT_SIZE_STEP, MAX_FONT_SIZE, MIN_FONT_SIZE,
)
from log import get_logger

log = get_logger("session")

Listener = Callable[["CaptureSession"], None]


def clamp_font_size(size: float) -> int:
  """Clamp to [MIN_FONT_SIZE, MAX_FONT_SIZE] and snap to the stepper grid.

  Halfway values snap down, so 9 -> 8 and 11 -> 10.
  """
  size = max(MIN_FONT_SIZE, min(MAX_FONT_SIZE, size))
  steps = math.ceil((size - MIN_FONT_SIZE) / FONT_SIZE_STEP - 0.5)
  return MIN_FONT_SIZE + steps * FONT_SIZE_STEP


class CaptureSession:
  """The one active capture plus the editor's tool configuration.

  Owned by the application object and mutated from the UI thread only.
  Listeners are called with the session after every mutation.
  """

  def __init__(self, tool: Union[AnnotationKind, str] = DEFAULT_TOOL,
               color: Union[QColor, str] = DEFAULT_COLOR,
               font_size: float = DEFAULT_FONT_SIZE):
    self.base_image: QImage | None = None
    self.annotations: list[Annotation] = []
    self.active_tool = AnnotationKind(tool)
    self.active_color = QColor(color)
    if not self.active_color.isValid():
      raise ValueError("invalid annotation color")
    self.pending_text = ""
    self.pending_font_size = clamp_font_size(font_size)
    self.is_editing = False
    self._listeners: list[Listener] = []

  @property
  def has_image(self) -> bool:
    return self.base_image is not None

  # -- Observers --------------------------------------------------------------

  def add_listener(self, callback: Listener) -> None:
    if callback not in self._listeners:
      self._listeners.append(callback)

  def remove_listener(self, callback: Listener) -> None:
    try:
      self._listeners.remove(callback)
    except ValueError:
      pass

  def _notify(self) -> None:
    for callback in list(self._listeners):
      callback(self)

  # -- Capture lifecycle ------------------------------------------------------

  def set_base_image(self, image: QImage) -> None:
    """Start a new session on ``image``, discarding the previous annotations."""
    if image is None or image.isNull():
      raise ValueError("base image must be a non-null QImage")
    self.base_image = image
    self.annotations = []
    self.is_editing = True
    log.debug("New capture %dx%d", image.width(), image.height())
    self._notify()

  def end_editing(self) -> None:
    self.is_editing = False
    self._notify()

  def resume_editing(self) -> bool:
    """Reopen the editor on the last capture. False if there is none."""
    if not self.has_image:
      return False
    self.is_editing = True
    self._notify()
    return True

  def append_annotation(self, annotation: Annotation) -> None:
    self.annotations.append(annotation)
    self._notify()

  # -- Tool configuration -----------------------------------------------------

  def set_tool(self, tool: Union[AnnotationKind, str]) -> None:
    self.active_tool = AnnotationKind(tool)
    self._notify()

  def set_color(self, color: Union[QColor, str]) -> None:
    color = QColor(color)
    if not color.isValid():
      raise ValueError("invalid annotation color")
    self.active_color = color
    self._notify()

  def set_pending_text(self, text: str) -> None:
    self.pending_text = text
    self._notify()

  def set_pending_font_size(self, size: float) -> None:
    self.pending_font_size = clamp_font_size(size)
    self._notify()
