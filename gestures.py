"""Turn pointer drags on the displayed image into annotations."""

from __future__ import annotations

import dataclasses

from PySide6.QtCore import QPointF, QRectF

from annotations import Annotation, AnnotationKind
from log import get_logger
from session import CaptureSession

log = get_logger("gestures")


@dataclasses.dataclass(frozen=True)
class ImageLayout:
  """Where and at what scale an image is drawn inside a view.

  ``offset_x``/``offset_y`` are the view coordinates of the image's top-left
  corner; ``scale`` is displayed pixels per native pixel.
  """
  offset_x: float = 0.0
  offset_y: float = 0.0
  scale: float = 1.0
  image_width: int = 0
  image_height: int = 0

  @classmethod
  def fit(cls, view_width: float, view_height: float,
          image_width: int, image_height: int,
          allow_upscale: bool = False) -> ImageLayout:
    """Centre the image in the view at the largest aspect-preserving scale."""
    if image_width <= 0 or image_height <= 0:
      return cls(0.0, 0.0, 1.0, image_width, image_height)
    scale = min(view_width / image_width, view_height / image_height)
    if not allow_upscale:
      scale = min(scale, 1.0)
    scale = max(scale, 0.0)
    shown_w = image_width * scale
    shown_h = image_height * scale
    return cls(
      (view_width - shown_w) / 2, (view_height - shown_h) / 2,
      scale, image_width, image_height,
    )

  def display_rect(self) -> QRectF:
    return QRectF(self.offset_x, self.offset_y,
                  self.image_width * self.scale, self.image_height * self.scale)

  def to_image(self, point: QPointF) -> QPointF | None:
    """Map a view point into native image pixels (None for an empty layout)."""
    if self.scale <= 0:
      return None
    return QPointF(
      (point.x() - self.offset_x) / self.scale,
      (point.y() - self.offset_y) / self.scale,
    )

  def to_view(self, point: QPointF) -> QPointF:
    return QPointF(
      point.x() * self.scale + self.offset_x,
      point.y() * self.scale + self.offset_y,
    )


class GestureMapper:
  """Feeds drag gestures into a CaptureSession.

  ``on_drag_update`` only tracks the drag for live preview. ``on_drag_end``
  is the single call that appends to the session.
  """

  def __init__(self, session: CaptureSession, layout: ImageLayout | None = None):
    self.session = session
    self.layout = layout or ImageLayout()
    self._drag_start: QPointF | None = None
    self._drag_current: QPointF | None = None

  def set_layout(self, layout: ImageLayout) -> None:
    self.layout = layout

  @property
  def dragging(self) -> bool:
    return self._drag_start is not None

  def on_drag_update(self, point: QPointF) -> None:
    if self._drag_start is None:
      self._drag_start = QPointF(point)
    self._drag_current = QPointF(point)

  def cancel(self) -> None:
    self._drag_start = None
    self._drag_current = None

  def on_drag_end(self, end_point: QPointF,
                  start_point: QPointF | None = None) -> Annotation | None:
    """Finish a drag; returns the appended annotation, if any."""
    start_point = start_point if start_point is not None else self._drag_start
    self.cancel()
    if start_point is None:
      log.debug("Drag ended without a recorded start, ignoring")
      return None

    annotation = self._build(start_point, end_point)
    if annotation is None:
      return None

    self.session.append_annotation(annotation)
    if annotation.kind is AnnotationKind.TEXT:
      self.session.set_pending_text("")
    return annotation

  def preview(self) -> Annotation | None:
    """The annotation the current drag would produce, without appending it."""
    if self._drag_start is None or self._drag_current is None:
      return None
    return self._build(self._drag_start, self._drag_current)

  def _build(self, start_point: QPointF, end_point: QPointF) -> Annotation | None:
    start = self.layout.to_image(start_point)
    end = self.layout.to_image(end_point)
    if start is None or end is None:
      return None

    session = self.session
    tool = session.active_tool
    if tool is AnnotationKind.HIGHLIGHT:
      return Annotation.highlight(start, end, session.active_color)
    if tool is AnnotationKind.ARROW:
      return Annotation.arrow(start, end, session.active_color)
    if not session.pending_text:
      return None
    return Annotation.text_label(
      start, session.pending_text, session.active_color, session.pending_font_size,
    )
