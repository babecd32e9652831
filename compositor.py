"""Flatten a capture and its annotations into one image and write it as PNG.

The same ``paint_annotation`` is used for the editor preview and for the
exported file, so what the user sees is what gets written.
"""

from __future__ import annotations

import math
import os
import threading
from datetime import datetime
from typing import Callable

from PySide6.QtCore import QObject, QPointF, QRectF, Qt, Signal
from PySide6.QtGui import (
  QColor, QFont, QFontDatabase, QFontMetricsF, QImage, QImageWriter,
  QPainter, QPen,
)

from annotations import (
  Annotation, AnnotationKind, ARROWHEAD_ANGLE, ARROWHEAD_LENGTH,
  HIGHLIGHT_FILL_OPACITY, STROKE_WIDTH,
)
from log import get_logger
from session import CaptureSession

log = get_logger("export")

EXPORT_FORMAT = QImage.Format.Format_RGBA8888


class ExportError(Exception):
  """The composited image could not be encoded or written."""


# -- Geometry -----------------------------------------------------------------

def highlight_rect(ann: Annotation) -> QRectF:
  """Axis-aligned rect spanned by the two points, in either order."""
  left = min(ann.start.x(), ann.end.x())
  top = min(ann.start.y(), ann.end.y())
  return QRectF(left, top, abs(ann.end.x() - ann.start.x()),
                abs(ann.end.y() - ann.start.y()))


def arrowhead_points(start: QPointF, end: QPointF) -> tuple[QPointF, QPointF]:
  """End points of the two head strokes drawn back from the tip at ``end``."""
  angle = math.atan2(end.y() - start.y(), end.x() - start.x())
  return (
    QPointF(end.x() - ARROWHEAD_LENGTH * math.cos(angle + ARROWHEAD_ANGLE),
            end.y() - ARROWHEAD_LENGTH * math.sin(angle + ARROWHEAD_ANGLE)),
    QPointF(end.x() - ARROWHEAD_LENGTH * math.cos(angle - ARROWHEAD_ANGLE),
            end.y() - ARROWHEAD_LENGTH * math.sin(angle - ARROWHEAD_ANGLE)),
  )


def text_font(font_size: float) -> QFont:
  # Pixel size, not point size: the image has no meaningful DPI.
  font = QFontDatabase.systemFont(QFontDatabase.SystemFont.GeneralFont)
  font.setPixelSize(max(1, round(font_size)))
  return font


def text_baseline(ann: Annotation) -> QPointF:
  """Baseline origin for a text label whose top-left sits at ``ann.start``."""
  metrics = QFontMetricsF(text_font(ann.font_size))
  return QPointF(ann.start.x(), ann.start.y() + metrics.ascent())


# -- Painting -----------------------------------------------------------------

def _stroke_pen(color: QColor) -> QPen:
  return QPen(color, STROKE_WIDTH, Qt.PenStyle.SolidLine,
              Qt.PenCapStyle.FlatCap, Qt.PenJoinStyle.MiterJoin)


def _paint_highlight(painter: QPainter, ann: Annotation) -> None:
  rect = highlight_rect(ann)
  fill = QColor(ann.color)
  fill.setAlphaF(ann.color.alphaF() * HIGHLIGHT_FILL_OPACITY)
  painter.fillRect(rect, fill)
  painter.setPen(_stroke_pen(ann.color))
  painter.setBrush(Qt.BrushStyle.NoBrush)
  painter.drawRect(rect)


def _paint_text(painter: QPainter, ann: Annotation) -> None:
  if not ann.text:
    return
  painter.setFont(text_font(ann.font_size))
  painter.setPen(ann.color)
  painter.drawText(text_baseline(ann), ann.text)


def _paint_arrow(painter: QPainter, ann: Annotation) -> None:
  painter.setPen(_stroke_pen(ann.color))
  painter.setBrush(Qt.BrushStyle.NoBrush)
  painter.drawLine(ann.start, ann.end)
  left, right = arrowhead_points(ann.start, ann.end)
  painter.drawLine(ann.end, left)
  painter.drawLine(ann.end, right)


_PAINTERS = {
  AnnotationKind.HIGHLIGHT: _paint_highlight,
  AnnotationKind.TEXT: _paint_text,
  AnnotationKind.ARROW: _paint_arrow,
}


def paint_annotation(painter: QPainter, ann: Annotation) -> None:
  """Draw one annotation in image coordinates on an active painter."""
  painter.save()
  try:
    _PAINTERS[ann.kind](painter, ann)
  finally:
    painter.restore()


def composite(session: CaptureSession) -> QImage:
  """Base image plus every annotation, in insertion order, at native size."""
  base = session.base_image
  if base is None or base.isNull():
    raise ExportError("No capture to export")

  width, height = base.width(), base.height()
  result = QImage(width, height, EXPORT_FORMAT)
  result.fill(Qt.GlobalColor.transparent)

  painter = QPainter(result)
  try:
    painter.setRenderHint(QPainter.RenderHint.Antialiasing)
    painter.setRenderHint(QPainter.RenderHint.TextAntialiasing)
    # Explicit target rect so a HiDPI source is not drawn at logical size.
    painter.drawImage(QRectF(0, 0, width, height), base)
    for ann in session.annotations:
      paint_annotation(painter, ann)
  finally:
    painter.end()
  return result


# -- Output -------------------------------------------------------------------

def default_export_filename(prefix: str, suffix_format: str,
                            now: datetime | None = None) -> str:
  """``<prefix>_<timestamp>.png`` with the timestamp from ``suffix_format``."""
  stamp = (now or datetime.now()).strftime(suffix_format)
  parts = [p for p in (prefix.strip(), stamp.strip()) if p]
  return "_".join(parts or ["screenshot"]) + ".png"


def write_png(image: QImage, path: str | os.PathLike) -> None:
  path = os.fspath(path)
  writer = QImageWriter(path, b"png")
  if not writer.write(image):
    raise ExportError(f"Could not write {path}: {writer.errorString()}")
  log.info("Exported %dx%d PNG to %s", image.width(), image.height(), path)


def export_png(session: CaptureSession, path: str | os.PathLike) -> str:
  """Composite the session and write it to ``path``. Session is left as is."""
  write_png(composite(session), path)
  return os.fspath(path)


class ExportJob(QObject):
  """Writes an already composited image on a worker thread.

  ``on_done(filepath, error=None)`` is invoked on the thread that created the
  job (the UI thread).
  """
  _completed = Signal(object, object)

  def __init__(self, image: QImage, path: str,
               on_done: Callable[..., None] | None = None,
               parent: QObject | None = None):
    super().__init__(parent)
    self.image = image
    self.path = path
    self.on_done = on_done
    self.done = False
    self._completed.connect(self._finish, Qt.ConnectionType.QueuedConnection)

  def start(self) -> None:
    threading.Thread(target=self._run, name="markshot-export", daemon=True).start()

  def _run(self) -> None:
    try:
      write_png(self.image, self.path)
    except ExportError as e:
      log.error("Export failed: %s", e)
      self._completed.emit(None, str(e))
      return
    self._completed.emit(self.path, None)

  def _finish(self, filepath: str | None, error: str | None) -> None:
    self.done = True
    if self.on_done:
      self.on_done(filepath, error=error)
