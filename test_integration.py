"""Integration tests for the app shell: capture -> editor -> export wiring."""

import os
import sys
import tempfile
import time
from unittest.mock import patch, MagicMock

import pytest
from PySide6.QtCore import QPointF
from PySide6.QtGui import QImage, QColor
from PySide6.QtWidgets import QApplication, QMenu, QSystemTrayIcon

app = QApplication.instance() or QApplication([])

import main
from annotations import Annotation
from capture import CANCELLED, FULLSCREEN, REGION
from compositor import ExportJob
from main import HotkeyBridge, MarkShot


def make_image(w=200, h=150):
  img = QImage(w, h, QImage.Format.Format_RGB32)
  img.fill(QColor(0, 128, 255))
  return img


def wait_until(predicate, timeout=5.0):
  """Pump the event loop until predicate() holds (worker threads report via signals)."""
  deadline = time.monotonic() + timeout
  while time.monotonic() < deadline:
    app.processEvents()
    if predicate():
      return True
    time.sleep(0.01)
  return False


@pytest.fixture
def ms(tmp_path):
  instance = MarkShot({"save_folder": str(tmp_path), "hide_delay_ms": 0})
  instance.tray_icon = MagicMock()
  instance.app = app
  yield instance
  if instance._editor is not None:
    instance._editor.hide()


class TestCaptureFlow:
  def test_capture_opens_editor(self, ms):
    ms.capturing = True
    img = make_image()
    ms._on_capture_done(img)
    assert ms.capturing is False
    assert ms.session.base_image is img
    assert ms.session.is_editing
    assert ms._editor is not None and ms._editor.isVisible()
    ms.tray_icon.showMessage.assert_not_called()

  def test_new_capture_replaces_annotations(self, ms):
    ms._on_capture_done(make_image())
    ms.session.append_annotation(
      Annotation.arrow(QPointF(0, 0), QPointF(5, 5), QColor("red")))
    ms._on_capture_done(make_image(50, 50))
    assert ms.session.annotations == []
    assert ms.session.base_image.width() == 50

  def test_cancel_is_silent(self, ms):
    ms.capturing = True
    ms._on_capture_done(None, error=CANCELLED)
    assert ms.capturing is False
    assert not ms.session.has_image
    assert ms._editor is None
    ms.tray_icon.showMessage.assert_not_called()

  def test_failure_notifies(self, ms):
    ms._on_capture_done(None, error="Screenshot failed: denied")
    ms.tray_icon.showMessage.assert_called_once()
    args = ms.tray_icon.showMessage.call_args[0]
    assert args[0] == "MarkShot"
    assert "denied" in args[1]
    assert args[2] == QSystemTrayIcon.MessageIcon.Critical
    assert not ms.session.has_image

  def test_capture_guard(self, ms):
    with patch("main.CaptureRunner") as runner_cls:
      ms.trigger_fullscreen()
      ms.trigger_region()
    runner_cls.assert_called_once()
    assert runner_cls.call_args[0][0] == FULLSCREEN
    assert runner_cls.call_args.kwargs["hide_delay_ms"] == 0
    runner_cls.return_value.start.assert_called_once()
    assert ms.capturing is True

  def test_region_mode(self, ms):
    with patch("main.CaptureRunner") as runner_cls:
      ms.trigger_region()
    assert runner_cls.call_args[0][0] == REGION

  def test_fullscreen_end_to_end(self, ms):
    ctx = MagicMock()
    ctx.monitors = [{"left": 0, "top": 0, "width": 200, "height": 150}]
    grab_result = MagicMock()
    grab_result.bgra = bytes(200 * 150 * 4)
    grab_result.width = 200
    grab_result.height = 150
    ctx.grab.return_value = grab_result

    with patch("capture.mss.mss") as mock_mss, patch("capture.QTimer"):
      mock_mss.return_value.__enter__ = lambda s: ctx
      mock_mss.return_value.__exit__ = MagicMock(return_value=False)
      ms.trigger_fullscreen()
      ms._runner._work()
      app.processEvents()

    assert ms.capturing is False
    assert ms.session.has_image
    assert ms.session.base_image.width() == 200
    assert ms._editor.isVisible()


class TestHideRestore:
  def test_visible_editor_hidden_during_capture(self, ms):
    ms._on_capture_done(make_image())
    ms._hide_ui()
    assert not ms._editor.isVisible()
    # Failed capture: the previous session comes back
    ms._restore_ui()
    assert ms._editor.isVisible()

  def test_closed_editor_stays_closed(self, ms):
    ms._on_capture_done(make_image())
    ms._editor.close()
    ms._hide_ui()
    ms._restore_ui()
    assert not ms._editor.isVisible()

  def test_session_changes_ignored_while_capturing(self, ms):
    ms._on_capture_done(make_image())
    ms._editor.hide()
    ms.capturing = True
    ms.session.set_tool("arrow")
    assert not ms._editor.isVisible()


class TestEditLatest:
  def test_reopen_after_close(self, ms):
    ms._on_capture_done(make_image())
    ms._editor.close()
    assert not ms.session.is_editing
    ms.open_editor()
    assert ms.session.is_editing
    assert ms._editor.isVisible()

  def test_nothing_to_reopen(self, ms):
    ms.open_editor()
    assert ms._editor is None


class TestExport:
  def test_save_writes_png_and_notifies(self, ms, tmp_path):
    ms._on_capture_done(make_image())
    ms.session.append_annotation(
      Annotation.highlight(QPointF(10, 10), QPointF(60, 60), QColor("yellow")))
    target = str(tmp_path / "annotated.png")

    with patch("main.ask_save_path", return_value=target) as ask:
      ms.save_annotated()

    suggested = ask.call_args[0][1]
    assert os.path.dirname(suggested) == str(tmp_path)
    assert suggested.endswith(".png")
    assert wait_until(lambda: ms.tray_icon.showMessage.called)
    args = ms.tray_icon.showMessage.call_args[0]
    assert args[1] == "annotated.png"
    assert args[2] == QSystemTrayIcon.MessageIcon.Information

    saved = QImage(target)
    assert (saved.width(), saved.height()) == (200, 150)
    # Export leaves the session untouched
    assert len(ms.session.annotations) == 1
    assert ms.session.is_editing

  def test_overlapping_saves_each_report(self, ms, tmp_path):
    ms._on_capture_done(make_image())
    targets = [str(tmp_path / "one.png"), str(tmp_path / "two.png")]
    with patch("main.ask_save_path", side_effect=targets), \
         patch.object(ExportJob, "start"):
      ms.save_annotated()
      ms.save_annotated()

    jobs = list(ms._export_jobs)
    assert len(jobs) == 2
    for job in jobs:
      job._run()
    assert wait_until(lambda: ms.tray_icon.showMessage.call_count == 2 and not ms._export_jobs)
    names = sorted(c.args[1] for c in ms.tray_icon.showMessage.call_args_list)
    assert names == ["one.png", "two.png"]
    assert all(os.path.isfile(t) for t in targets)

  def test_cancelled_dialog_does_nothing(self, ms):
    ms._on_capture_done(make_image())
    with patch("main.ask_save_path", return_value=None), \
         patch("main.ExportJob") as job_cls:
      ms.save_annotated()
    job_cls.assert_not_called()
    ms.tray_icon.showMessage.assert_not_called()

  def test_write_failure_notifies(self, ms):
    ms._on_capture_done(make_image())
    with patch("main.ask_save_path", return_value="/dev/null/impossible/x.png"):
      ms.save_annotated()
    assert wait_until(lambda: ms.tray_icon.showMessage.called)
    args = ms.tray_icon.showMessage.call_args[0]
    assert args[2] == QSystemTrayIcon.MessageIcon.Critical

  def test_no_capture_no_dialog(self, ms):
    with patch("main.ask_save_path") as ask:
      ms.save_annotated()
    ask.assert_not_called()

  def test_ask_save_path_appends_extension(self):
    with patch("main.QFileDialog.getSaveFileName", return_value=("/tmp/shot", "")):
      assert main.ask_save_path(None, "/tmp/x.png") == "/tmp/shot.png"
    with patch("main.QFileDialog.getSaveFileName", return_value=("", "")):
      assert main.ask_save_path(None, "/tmp/x.png") is None

  def test_notification_click_reveals_file(self, ms, tmp_path):
    path = tmp_path / "a.png"
    path.write_bytes(b"x")
    ms._last_export_path = str(path)
    with patch.object(MarkShot, "_show_in_explorer") as show:
      ms._on_notification_clicked()
    show.assert_called_once_with(str(path))


class TestTrayMenu:
  def _actions(self, ms):
    ms.tray_menu = QMenu()
    ms._rebuild_tray_menu()
    return [a for a in ms.tray_menu.actions() if not a.isSeparator()]

  def test_menu_without_capture(self, ms):
    texts = [a.text() for a in self._actions(ms)]
    assert texts[0].startswith("Capture Full Screen")
    assert texts[1].startswith("Capture Selection")
    assert "Edit Latest Screenshot" not in texts
    assert texts[-1] == "Quit"

  def test_menu_shows_hotkeys(self, ms):
    ms.settings["hotkey_fullscreen"] = "<ctrl>+<shift>+f"
    texts = [a.text() for a in self._actions(ms)]
    assert "Ctrl + Shift + F" in texts[0]

  def test_edit_latest_entry(self, ms):
    ms._on_capture_done(make_image())
    ms._editor.close()
    actions = self._actions(ms)
    edit = [a for a in actions if a.text() == "Edit Latest Screenshot"]
    assert len(edit) == 1
    assert not edit[0].icon().isNull()
    edit[0].trigger()
    assert ms.session.is_editing

  def test_capture_actions_disabled_while_capturing(self, ms):
    ms.capturing = True
    actions = self._actions(ms)
    assert not actions[0].isEnabled()
    assert not actions[1].isEnabled()

  def test_create_tray_icon(self):
    icon = main.create_tray_icon()
    assert not icon.isNull()


class TestHotkeys:
  def _fake_pynput(self):
    pynput = MagicMock()
    keyboard = pynput.keyboard

    def parse(s):
      if "bad" in s:
        raise ValueError("unknown key")
      return [s]
    keyboard.HotKey.parse.side_effect = parse
    return pynput, keyboard

  def test_listener_started(self, ms, monkeypatch):
    pynput, keyboard = self._fake_pynput()
    monkeypatch.setitem(sys.modules, "pynput", pynput)
    ms.hotkey_bridge = HotkeyBridge()
    ms._start_hotkey_listener()
    assert keyboard.HotKey.call_count == 2
    keyboard.Listener.return_value.start.assert_called_once()
    ms._stop_hotkey_listener()
    keyboard.Listener.return_value.stop.assert_called_once()
    assert ms._listener is None

  def test_invalid_hotkey_falls_back(self, ms, monkeypatch):
    pynput, keyboard = self._fake_pynput()
    monkeypatch.setitem(sys.modules, "pynput", pynput)
    ms.settings["hotkey_region"] = "<bad>+x"
    ms.hotkey_bridge = HotkeyBridge()
    ms._start_hotkey_listener()
    parsed = [c.args[0] for c in keyboard.HotKey.parse.call_args_list]
    assert main.DEFAULT_HOTKEY_REGION in parsed

  def test_stop_tolerates_errors(self, ms):
    ms._stop_hotkey_listener()
    ms._listener = MagicMock()
    ms._listener.stop.side_effect = RuntimeError("already stopped")
    ms._stop_hotkey_listener()
    assert ms._listener is None

  def test_bridge_signals_trigger_capture(self, ms):
    bridge = HotkeyBridge()
    bridge.fullscreen_triggered.connect(ms.trigger_fullscreen)
    with patch("main.CaptureRunner") as runner_cls:
      bridge.fullscreen_triggered.emit()
    assert runner_cls.call_args[0][0] == FULLSCREEN


class TestDefaultHotkeysWithPynput:
  """Feed real pynput HotKeys the keys a listener delivers while Shift is held."""

  def _keyboard(self):
    try:
      from pynput import keyboard
    except Exception as e:  # no input backend, e.g. no X display
      pytest.skip(f"pynput keyboard backend unavailable: {e}")
    if keyboard.Key.ctrl == keyboard.Key.shift:
      pytest.skip("pynput dummy backend has no distinct keys")
    return keyboard

  def _press_shifted(self, keyboard, combo):
    """Press combo as delivered: modifiers, then the Shift-modified character."""
    listener = keyboard.Listener()
    modifiers = {
      "<ctrl>": keyboard.Key.ctrl_l,
      "<cmd>": keyboard.Key.cmd,
      "<shift>": keyboard.Key.shift,
    }
    shifted = {"1": "!", "2": "@"}
    *mods, char = combo.split("+")
    delivered = [modifiers[m] for m in mods]
    delivered.append(keyboard.KeyCode.from_char(shifted.get(char, char.upper())))

    fired = []
    hotkey = keyboard.HotKey(keyboard.HotKey.parse(combo), lambda: fired.append(combo))
    for key in delivered:
      hotkey.press(listener.canonical(key))
    for key in reversed(delivered):
      hotkey.release(listener.canonical(key))
    return fired

  @pytest.mark.parametrize("combo", [main.DEFAULT_HOTKEY_FULLSCREEN, main.DEFAULT_HOTKEY_REGION])
  def test_default_combination_fires(self, combo):
    keyboard = self._keyboard()
    assert self._press_shifted(keyboard, combo) == [combo]

  def test_shifted_digit_never_matches(self):
    keyboard = self._keyboard()
    assert self._press_shifted(keyboard, "<ctrl>+<shift>+1") == []


@pytest.mark.skipif(sys.platform == "win32", reason="flock semantics")
class TestSingleInstance:
  def test_second_instance_exits(self, tmp_path, monkeypatch):
    monkeypatch.setattr(tempfile, "gettempdir", lambda: str(tmp_path))
    lock = main.acquire_single_instance()
    try:
      assert (tmp_path / "markshot.lock").read_text() == str(os.getpid())
      with pytest.raises(SystemExit):
        main.acquire_single_instance()
    finally:
      lock.close()

  def test_lock_released_on_close(self, tmp_path, monkeypatch):
    monkeypatch.setattr(tempfile, "gettempdir", lambda: str(tmp_path))
    main.acquire_single_instance().close()
    main.acquire_single_instance().close()
