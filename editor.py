"""Editor window: shows the capture, takes drags, and drives the session."""

from __future__ import annotations

from typing import Callable, TYPE_CHECKING

from PySide6.QtCore import Qt, QPointF, QRect, QRectF, Signal
from PySide6.QtGui import (
  QColor, QIcon, QPainter, QPainterPath, QPen, QPixmap,
)
from PySide6.QtWidgets import (
  QApplication, QButtonGroup, QColorDialog, QHBoxLayout, QLabel, QLineEdit,
  QPushButton, QSpinBox, QVBoxLayout, QWidget,
)

from annotations import (
  AnnotationKind, FONT_SIZE_STEP, MAX_FONT_SIZE, MIN_FONT_SIZE, TOOL_LABELS,
)
from compositor import paint_annotation
from gestures import GestureMapper, ImageLayout
from log import get_logger
from session import CaptureSession

if TYPE_CHECKING:
  from PySide6.QtGui import QCloseEvent, QKeyEvent, QMouseEvent, QPaintEvent, QResizeEvent

log = get_logger("editor")

ICON_SIZE = 24
_ICON_COLOR = QColor(90, 90, 90)


# -- Tool icons ---------------------------------------------------------------

def _make_icon(draw_fn) -> QIcon:
  """Create a QIcon by painting onto a transparent square pixmap."""
  pixmap = QPixmap(ICON_SIZE, ICON_SIZE)
  pixmap.fill(QColor(0, 0, 0, 0))
  painter = QPainter(pixmap)
  painter.setRenderHint(QPainter.RenderHint.Antialiasing)
  draw_fn(painter, ICON_SIZE)
  painter.end()
  return QIcon(pixmap)


def _draw_highlight_icon(painter: QPainter, size: int) -> None:
  fill = QColor(255, 220, 0, 110)
  painter.setPen(QPen(QColor(220, 180, 0), 2))
  painter.setBrush(fill)
  painter.drawRect(4, 6, size - 8, size - 12)


def _draw_text_icon(painter: QPainter, size: int) -> None:
  font = painter.font()
  font.setPixelSize(16)
  font.setBold(True)
  painter.setFont(font)
  painter.setPen(_ICON_COLOR)
  painter.drawText(QRect(0, 0, size, size), Qt.AlignmentFlag.AlignCenter, "T")


def _draw_arrow_icon(painter: QPainter, size: int) -> None:
  painter.setPen(QPen(_ICON_COLOR, 2))
  path = QPainterPath()
  path.moveTo(5, size - 5)
  path.lineTo(size - 5, 5)
  path.moveTo(size - 5, 5)
  path.lineTo(size - 12, 6)
  path.moveTo(size - 5, 5)
  path.lineTo(size - 6, 12)
  painter.drawPath(path)


_TOOL_ICONS = {
  AnnotationKind.HIGHLIGHT: _draw_highlight_icon,
  AnnotationKind.TEXT: _draw_text_icon,
  AnnotationKind.ARROW: _draw_arrow_icon,
}


# -- Color button -------------------------------------------------------------

class ColorButton(QPushButton):
  """Swatch that opens a QColorDialog (with alpha) when clicked."""
  color_changed = Signal(QColor)

  def __init__(self, color: QColor, parent: QWidget | None = None):
    super().__init__(parent)
    self._color = QColor(color)
    self.setFixedSize(28, 28)
    self.setToolTip("Annotation color")
    self._update_style()
    self.clicked.connect(self._pick_color)

  def color(self) -> QColor:
    return QColor(self._color)

  def set_color(self, color: QColor) -> None:
    if QColor(color) != self._color:
      self._color = QColor(color)
      self._update_style()

  def _update_style(self) -> None:
    self.setStyleSheet(
      "QPushButton { background-color: %s; border: 2px solid #555; border-radius: 4px; }"
      "QPushButton:hover { border-color: #aaa; }"
      % self._color.name(QColor.NameFormat.HexArgb)
    )

  def _pick_color(self) -> None:
    c = QColorDialog.getColor(
      self._color, self.window(), "Annotation Color",
      QColorDialog.ColorDialogOption.ShowAlphaChannel,
    )
    if c.isValid():
      self.set_color(c)
      self.color_changed.emit(c)


# -- Toolbar ------------------------------------------------------------------

class EditorToolbar(QWidget):
  """Tool, color and text controls plus Save / Close."""

  tool_changed = Signal(object)
  color_changed = Signal(QColor)
  text_edited = Signal(str)
  font_size_changed = Signal(int)
  save_requested = Signal()
  close_requested = Signal()

  def __init__(self, session: CaptureSession, parent: QWidget | None = None):
    super().__init__(parent)
    layout = QHBoxLayout(self)
    layout.setContentsMargins(8, 6, 8, 6)
    layout.setSpacing(6)

    self._tool_group = QButtonGroup(self)
    self._tool_group.setExclusive(True)
    self._tool_buttons: dict[AnnotationKind, QPushButton] = {}
    for kind in AnnotationKind:
      btn = QPushButton()
      btn.setIcon(_make_icon(_TOOL_ICONS[kind]))
      btn.setFixedSize(32, 32)
      btn.setCheckable(True)
      btn.setToolTip(TOOL_LABELS[kind])
      self._tool_group.addButton(btn)
      self._tool_buttons[kind] = btn
      layout.addWidget(btn)
    self._tool_group.buttonClicked.connect(self._on_tool_clicked)

    self.color_btn = ColorButton(session.active_color, self)
    self.color_btn.color_changed.connect(self.color_changed.emit)
    layout.addWidget(self.color_btn)

    # Text controls, only shown while the Text tool is active
    self._text_controls = QWidget(self)
    text_layout = QHBoxLayout(self._text_controls)
    text_layout.setContentsMargins(0, 0, 0, 0)
    self.text_edit = QLineEdit()
    self.text_edit.setPlaceholderText("Text to add")
    self.text_edit.setFixedWidth(200)
    self.text_edit.textEdited.connect(self.text_edited.emit)
    text_layout.addWidget(self.text_edit)
    text_layout.addWidget(QLabel("Font:"))
    self.font_spin = QSpinBox()
    self.font_spin.setRange(MIN_FONT_SIZE, MAX_FONT_SIZE)
    self.font_spin.setSingleStep(FONT_SIZE_STEP)
    self.font_spin.setToolTip("Text size in image pixels")
    self.font_spin.valueChanged.connect(self.font_size_changed.emit)
    text_layout.addWidget(self.font_spin)
    layout.addWidget(self._text_controls)

    layout.addStretch()

    self._save_btn = QPushButton("Save")
    self._save_btn.setToolTip("Export as PNG (Ctrl+S)")
    self._save_btn.clicked.connect(self.save_requested.emit)
    layout.addWidget(self._save_btn)

    self._close_btn = QPushButton("Close")
    self._close_btn.setToolTip("Close the editor (Esc)")
    self._close_btn.clicked.connect(self.close_requested.emit)
    layout.addWidget(self._close_btn)

    self.sync(session)

  def _on_tool_clicked(self, btn: QPushButton) -> None:
    for kind, candidate in self._tool_buttons.items():
      if candidate is btn:
        self.tool_changed.emit(kind)
        return

  def sync(self, session: CaptureSession) -> None:
    """Reflect session state without echoing signals back."""
    self._tool_buttons[session.active_tool].setChecked(True)
    self.color_btn.set_color(session.active_color)
    self._text_controls.setVisible(session.active_tool is AnnotationKind.TEXT)
    if self.text_edit.text() != session.pending_text:
      self.text_edit.setText(session.pending_text)
    if self.font_spin.value() != session.pending_font_size:
      self.font_spin.blockSignals(True)
      self.font_spin.setValue(session.pending_font_size)
      self.font_spin.blockSignals(False)

  def current_tool(self) -> AnnotationKind | None:
    checked = self._tool_group.checkedButton()
    for kind, btn in self._tool_buttons.items():
      if btn is checked:
        return kind
    return None


# -- Canvas -------------------------------------------------------------------

class AnnotationCanvas(QWidget):
  """Draws the capture letterboxed in the widget and turns drags into annotations."""

  def __init__(self, session: CaptureSession, parent: QWidget | None = None):
    super().__init__(parent)
    self.session = session
    self.mapper = GestureMapper(session)
    self._image_key = None
    self._pixmap: QPixmap | None = None
    self.setMinimumSize(320, 200)
    self.setCursor(Qt.CursorShape.CrossCursor)
    self.refresh()

  def refresh(self) -> None:
    """Pick up a new base image and recompute the layout."""
    image = self.session.base_image
    key = image.cacheKey() if image is not None else None
    if key != self._image_key:
      self._image_key = key
      self._pixmap = QPixmap.fromImage(image) if image is not None else None
      self.mapper.cancel()
    self._update_layout()
    self.update()

  def _update_layout(self) -> None:
    image = self.session.base_image
    if image is None:
      self.mapper.set_layout(ImageLayout())
      return
    self.mapper.set_layout(ImageLayout.fit(
      self.width(), self.height(), image.width(), image.height(),
      allow_upscale=True,
    ))

  def resizeEvent(self, event: QResizeEvent) -> None:
    super().resizeEvent(event)
    self._update_layout()

  def paintEvent(self, event: QPaintEvent) -> None:
    painter = QPainter(self)
    painter.fillRect(self.rect(), QColor(60, 60, 60))
    if self._pixmap is None:
      painter.end()
      return

    layout = self.mapper.layout
    painter.setRenderHint(QPainter.RenderHint.SmoothPixmapTransform)
    painter.drawPixmap(layout.display_rect(), self._pixmap, QRectF(self._pixmap.rect()))

    painter.setRenderHint(QPainter.RenderHint.Antialiasing)
    painter.setRenderHint(QPainter.RenderHint.TextAntialiasing)
    painter.translate(layout.offset_x, layout.offset_y)
    painter.scale(layout.scale, layout.scale)
    for ann in self.session.annotations:
      paint_annotation(painter, ann)
    pending = self.mapper.preview()
    if pending is not None:
      paint_annotation(painter, pending)
    painter.end()

  def mousePressEvent(self, event: QMouseEvent) -> None:
    if event.button() == Qt.MouseButton.RightButton:
      self.mapper.cancel()
      self.update()
      return
    if event.button() != Qt.MouseButton.LeftButton or not self.session.has_image:
      return
    self.mapper.cancel()
    self.mapper.on_drag_update(QPointF(event.position()))
    self.update()

  def mouseMoveEvent(self, event: QMouseEvent) -> None:
    if self.mapper.dragging:
      self.mapper.on_drag_update(QPointF(event.position()))
      self.update()

  def mouseReleaseEvent(self, event: QMouseEvent) -> None:
    if event.button() != Qt.MouseButton.LeftButton:
      return
    ann = self.mapper.on_drag_end(QPointF(event.position()))
    if ann is not None:
      log.debug("Added %s annotation (%d total)",
        ann.kind.value, len(self.session.annotations))
    self.update()


# -- Window -------------------------------------------------------------------

class EditorWindow(QWidget):
  """Top-level editor. Closing it ends editing; the capture is kept."""

  def __init__(self, session: CaptureSession,
               on_save: Callable[[], None] | None = None,
               parent: QWidget | None = None):
    super().__init__(parent)
    self.session = session
    self.on_save = on_save
    self._closing = False
    self.setWindowTitle("MarkShot")
    self.setFocusPolicy(Qt.FocusPolicy.StrongFocus)

    self.toolbar = EditorToolbar(session, self)
    self.canvas = AnnotationCanvas(session, self)

    layout = QVBoxLayout(self)
    layout.setContentsMargins(0, 0, 0, 0)
    layout.setSpacing(0)
    layout.addWidget(self.toolbar)
    layout.addWidget(self.canvas, 1)

    self.toolbar.tool_changed.connect(session.set_tool)
    self.toolbar.color_changed.connect(session.set_color)
    self.toolbar.text_edited.connect(session.set_pending_text)
    self.toolbar.font_size_changed.connect(session.set_pending_font_size)
    self.toolbar.save_requested.connect(self._request_save)
    self.toolbar.close_requested.connect(self.close)

    session.add_listener(self._on_session_changed)
    self._fit_to_screen()

  def _fit_to_screen(self) -> None:
    screen = QApplication.primaryScreen()
    if screen is None:
      self.resize(1000, 700)
      return
    avail = screen.availableGeometry()
    self.resize(int(avail.width() * 0.8), int(avail.height() * 0.8))
    self.move(avail.center() - self.rect().center())

  def _on_session_changed(self, session: CaptureSession) -> None:
    self.toolbar.sync(session)
    self.canvas.refresh()
    if not session.is_editing and self.isVisible() and not self._closing:
      self.hide()

  def _request_save(self) -> None:
    if self.on_save:
      self.on_save()

  def keyPressEvent(self, event: QKeyEvent) -> None:
    key = event.key()
    mods = event.modifiers() & (
      Qt.KeyboardModifier.ControlModifier
      | Qt.KeyboardModifier.ShiftModifier
      | Qt.KeyboardModifier.AltModifier
      | Qt.KeyboardModifier.MetaModifier
    )
    if key == Qt.Key.Key_Escape:
      if self.canvas.mapper.dragging:
        self.canvas.mapper.cancel()
        self.canvas.update()
      else:
        self.close()
    elif key == Qt.Key.Key_S and mods == Qt.KeyboardModifier.ControlModifier:
      self._request_save()
    else:
      super().keyPressEvent(event)

  def showEvent(self, event) -> None:
    super().showEvent(event)
    self.raise_()
    self.activateWindow()

  def closeEvent(self, event: QCloseEvent) -> None:
    self._closing = True
    try:
      if self.session.is_editing:
        self.session.end_editing()
    finally:
      self._closing = False
    super().closeEvent(event)
