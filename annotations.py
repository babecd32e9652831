"""Annotation data model: one highlight, arrow or text label on a capture."""

from __future__ import annotations

import dataclasses
import enum
import math
import uuid

from PySide6.QtCore import QPointF
from PySide6.QtGui import QColor


class AnnotationKind(enum.Enum):
  HIGHLIGHT = "highlight"
  TEXT = "text"
  ARROW = "arrow"


TOOL_LABELS = {
  AnnotationKind.HIGHLIGHT: "Highlight",
  AnnotationKind.TEXT: "Text",
  AnnotationKind.ARROW: "Arrow",
}

DEFAULT_COLOR = QColor(255, 255, 0)
DEFAULT_TOOL = AnnotationKind.HIGHLIGHT
DEFAULT_FONT_SIZE = 16
MIN_FONT_SIZE = 8
MAX_FONT_SIZE = 72
FONT_SIZE_STEP = 2

HIGHLIGHT_FILL_OPACITY = 0.4
STROKE_WIDTH = 2
ARROWHEAD_LENGTH = 15
ARROWHEAD_ANGLE = math.pi / 8


@dataclasses.dataclass(frozen=True, init=False)
class Annotation:
  """A single annotation in native image pixel coordinates.

  Geometry and color are stored as plain values. ``start``, ``end`` and
  ``color`` hand out fresh Qt objects, so mutating one never changes the
  annotation. ``text`` and ``font_size`` only matter for TEXT annotations.
  ``id`` is an opaque handle for UI lists and takes no part in equality.
  """
  kind: AnnotationKind
  _start: tuple[float, float]
  _end: tuple[float, float]
  _rgba: int
  text: str
  font_size: float
  id: uuid.UUID = dataclasses.field(compare=False)

  def __init__(self, kind: AnnotationKind, start: QPointF, end: QPointF,
               color: QColor, text: str = "",
               font_size: float = DEFAULT_FONT_SIZE) -> None:
    object.__setattr__(self, "kind", AnnotationKind(kind))
    object.__setattr__(self, "_start", (start.x(), start.y()))
    object.__setattr__(self, "_end", (end.x(), end.y()))
    object.__setattr__(self, "_rgba", QColor(color).rgba())
    object.__setattr__(self, "text", text)
    object.__setattr__(self, "font_size", font_size)
    object.__setattr__(self, "id", uuid.uuid4())

  @property
  def start(self) -> QPointF:
    return QPointF(*self._start)

  @property
  def end(self) -> QPointF:
    return QPointF(*self._end)

  @property
  def color(self) -> QColor:
    return QColor.fromRgba(self._rgba)

  @classmethod
  def highlight(cls, start: QPointF, end: QPointF, color: QColor) -> Annotation:
    return cls(AnnotationKind.HIGHLIGHT, start, end, color)

  @classmethod
  def arrow(cls, start: QPointF, end: QPointF, color: QColor) -> Annotation:
    return cls(AnnotationKind.ARROW, start, end, color)

  @classmethod
  def text_label(cls, position: QPointF, text: str, color: QColor,
                 font_size: float = DEFAULT_FONT_SIZE) -> Annotation:
    return cls(AnnotationKind.TEXT, position, position, color, text, font_size)
