import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

from PyQt5.QtCore import QPoint, QSize, Qt, QTimer, pyqtSignal
from PyQt5.QtGui import QColor, QImage, QPainter, QPalette, QPixmap, QWheelEvent
from PyQt5.QtWidgets import (
    QAction, QApplication, QCheckBox, QComboBox, QDoubleSpinBox, QFileDialog, QFrame, QGroupBox,
    QHBoxLayout, QInputDialog, QLabel, QLineEdit, QListWidget, QListWidgetItem, QMainWindow,
    QMessageBox, QPushButton, QScrollArea, QSlider, QSpinBox, QStyleFactory, QToolBar, QVBoxLayout, QWidget,
)

from PIL import Image

from halftone import HalftoneGenerator, param_text
from orchestrator import ContinuousRenderer, StaticRenderer
from settings import (
    ConfigTokenError, HalftoneConfig, describe_preset, export_token, import_token, list_presets, preset_config,
)
from sources import ImageLoader, VideoSource, is_video_path_or_url, save_image
from store import JsonPaletteStore, SavedPalette

log = logging.getLogger("dotter.gui")

# Frozen bundle: ffmpeg ships next to the executable
if getattr(sys, "frozen", False):
    os.environ["PATH"] += os.pathsep + sys._MEIPASS

PREVIEW_MAX_SIZE = 1200


# -----------------------------------------------------------------------------
# Dark Theme
# -----------------------------------------------------------------------------
def set_dark_theme(app):
    app.setStyle(QStyleFactory.create("Fusion"))
    palette = QPalette()
    palette.setColor(QPalette.Window, QColor(40, 40, 42))
    palette.setColor(QPalette.WindowText, Qt.white)
    palette.setColor(QPalette.Base, QColor(28, 28, 30))
    palette.setColor(QPalette.AlternateBase, QColor(40, 40, 42))
    palette.setColor(QPalette.ToolTipBase, Qt.white)
    palette.setColor(QPalette.ToolTipText, Qt.white)
    palette.setColor(QPalette.Text, Qt.white)
    palette.setColor(QPalette.Button, QColor(40, 40, 42))
    palette.setColor(QPalette.ButtonText, Qt.white)
    palette.setColor(QPalette.Highlight, QColor(230, 120, 40))
    palette.setColor(QPalette.HighlightedText, Qt.black)
    app.setPalette(palette)
    app.setStyleSheet("""
        QGroupBox {
            border: 1px solid #505050;
            margin-top: 1.2em;
            border-radius: 4px;
            font-weight: bold;
        }
        QGroupBox::title {
            subcontrol-origin: margin;
            subcontrol-position: top left;
            padding: 0 5px;
        }
        QSlider::groove:horizontal {
            height: 6px;
            background: #1c1c1e;
            border-radius: 3px;
        }
        QSlider::handle:horizontal {
            background: #e67828;
            width: 14px;
            margin: -5px 0;
            border-radius: 7px;
        }
        QLineEdit, QComboBox, QSpinBox, QDoubleSpinBox, QListWidget {
            border: 1px solid #505050;
            border-radius: 3px;
            background: #1c1c1e;
            color: white;
        }
        QListWidget::item:selected {
            background-color: #e67828;
        }
    """)


# -----------------------------------------------------------------------------
# Image Viewer (zoom with wheel, pan with drag)
# -----------------------------------------------------------------------------
class ImageViewer(QWidget):
    def __init__(self, parent=None):
        super().__init__(parent)
        self.pixmap: Optional[QPixmap] = None
        self._zoom = 1.0
        self._drag_start: Optional[QPoint] = None
        self._offset = QPoint(0, 0)
        self.setMouseTracking(True)

    def set_image(self, pil_image: Optional[Image.Image], *, refit: bool = True):
        if pil_image is None:
            self.pixmap = None
            self.update()
            return
        # RGBA8888 keeps channel order (no red/blue swap)
        if pil_image.mode != "RGBA":
            pil_image = pil_image.convert("RGBA")
        data = pil_image.tobytes("raw", "RGBA")
        qim = QImage(data, pil_image.width, pil_image.height, QImage.Format_RGBA8888)
        size_changed = self.pixmap is None or self.pixmap.size() != qim.size()
        self.pixmap = QPixmap.fromImage(qim)
        if refit or size_changed:
            self.fit_to_window()
        self.update()

    def fit_to_window(self):
        if not self.pixmap:
            return
        self._zoom = min(self.width() / self.pixmap.width(), self.height() / self.pixmap.height()) * 0.95
        w = self.pixmap.width() * self._zoom
        h = self.pixmap.height() * self._zoom
        self._offset = QPoint(int((self.width() - w) / 2), int((self.height() - h) / 2))

    def paintEvent(self, event):
        painter = QPainter(self)
        painter.setRenderHint(QPainter.SmoothPixmapTransform)
        # checker shows transparent paper
        tile = 12
        for y in range(0, self.height(), tile):
            for x in range(0, self.width(), tile):
                shade = 44 if (x // tile + y // tile) % 2 else 34
                painter.fillRect(x, y, tile, tile, QColor(shade, shade, shade))
        if self.pixmap:
            w = int(self.pixmap.width() * self._zoom)
            h = int(self.pixmap.height() * self._zoom)
            painter.drawPixmap(self._offset.x(), self._offset.y(), w, h, self.pixmap)
        else:
            painter.setPen(QColor(150, 150, 150))
            painter.drawText(self.rect(), Qt.AlignCenter, "Open an image or video")

    def resizeEvent(self, event):
        self.fit_to_window()
        super().resizeEvent(event)

    def wheelEvent(self, event: QWheelEvent):
        if not self.pixmap:
            return
        factor = 1.1 if event.angleDelta().y() > 0 else 0.9
        old_zoom = self._zoom
        self._zoom = max(0.01, min(50.0, self._zoom * factor))
        # keep the point under the cursor fixed
        pos = event.pos()
        k = self._zoom / old_zoom
        self._offset = QPoint(int(pos.x() - (pos.x() - self._offset.x()) * k),
                              int(pos.y() - (pos.y() - self._offset.y()) * k))
        self.update()

    def mousePressEvent(self, event):
        if event.button() == Qt.LeftButton:
            self._drag_start = event.pos()

    def mouseMoveEvent(self, event):
        if self._drag_start:
            self._offset += event.pos() - self._drag_start
            self._drag_start = event.pos()
            self.update()

    def mouseReleaseEvent(self, event):
        self._drag_start = None


# -----------------------------------------------------------------------------
# Parameter controls
# -----------------------------------------------------------------------------
class RangeParam(QWidget):
    """Slider + spin box for one numeric setting (int or float)."""

    STEPS = 1000

    def __init__(self, name, val, min_val, max_val, is_int=False, parent=None):
        super().__init__(parent)
        self.min_val, self.max_val, self.is_int = min_val, max_val, is_int
        layout = QVBoxLayout(self)
        layout.setContentsMargins(0, 5, 0, 5)
        layout.setSpacing(2)
        layout.addWidget(QLabel(name))

        row = QHBoxLayout()
        if is_int:
            self.spin = QSpinBox()
            self.spin.setRange(int(min_val), int(max_val))
        else:
            self.spin = QDoubleSpinBox()
            self.spin.setRange(min_val, max_val)
            self.spin.setDecimals(2)
            self.spin.setSingleStep((max_val - min_val) / 100.0)
        self.spin.setFixedWidth(70)
        self.slider = QSlider(Qt.Horizontal)
        self.slider.setRange(0, self.STEPS)
        self._linked = False
        self.spin.valueChanged.connect(self._spin_changed)
        self.slider.valueChanged.connect(self._slider_changed)
        row.addWidget(self.slider)
        row.addWidget(self.spin)
        layout.addLayout(row)
        self.set_value(val)

    def _span(self):
        return (self.max_val - self.min_val) or 1.0

    def _spin_changed(self, val):
        if self._linked:
            return
        self._linked = True
        self.slider.setValue(int(round((val - self.min_val) / self._span() * self.STEPS)))
        self._linked = False

    def _slider_changed(self, pos):
        if self._linked:
            return
        self._linked = True
        val = self.min_val + pos / self.STEPS * self._span()
        self.spin.setValue(int(round(val)) if self.is_int else val)
        self._linked = False

    def set_value(self, val):
        try:
            v = float(val)
        except (TypeError, ValueError):
            return
        self.spin.setValue(int(round(v)) if self.is_int else v)
        self._spin_changed(self.spin.value())

    def value(self):
        return self.spin.value()


class SettingsPanel(QWidget):
    """One control per HalftoneGenerator parameter; emits paramChanged on edits."""

    paramChanged = pyqtSignal()

    def __init__(self):
        super().__init__()
        self.layout = QVBoxLayout(self)
        self.layout.setAlignment(Qt.AlignTop)
        self.layout.setContentsMargins(10, 10, 10, 10)
        self.controls: Dict[str, Any] = {}
        self.updating = False
        self._build()

    def _build(self):
        for p in HalftoneGenerator.get_params():
            name, ptype, val = p["name"], p.get("type", str), p.get("default")
            if "choices" in p:
                container = QWidget()
                row = QHBoxLayout(container)
                row.setContentsMargins(0, 5, 0, 5)
                widget = QComboBox()
                widget.addItems([str(c) for c in p["choices"]])
                widget.setCurrentText(str(val))
                widget.currentTextChanged.connect(self._on_change)
                row.addWidget(QLabel(name))
                row.addWidget(widget, 1)
            elif ptype in (int, float) and "min" in p and "max" in p:
                container = widget = RangeParam(name, val, p["min"], p["max"], is_int=ptype is int)
                widget.spin.valueChanged.connect(self._on_change)
            elif ptype is bool:
                container = widget = QCheckBox(name)
                widget.setChecked(bool(val))
                widget.toggled.connect(self._on_change)
            else:
                container = QWidget()
                row = QHBoxLayout(container)
                row.setContentsMargins(0, 5, 0, 5)
                widget = QLineEdit(str(val))
                widget.editingFinished.connect(self._on_change)
                row.addWidget(QLabel(name))
                row.addWidget(widget, 1)
            container.setToolTip(p.get("help", ""))
            self.layout.addWidget(container)
            self.controls[name] = widget
        self.layout.addStretch()

    def get_values(self) -> Dict[str, Any]:
        out = {}
        for name, w in self.controls.items():
            if isinstance(w, QComboBox):
                out[name] = w.currentText()
            elif isinstance(w, QCheckBox):
                out[name] = w.isChecked()
            elif isinstance(w, QLineEdit):
                out[name] = w.text()
            else:
                out[name] = w.value()
        return out

    def set_values(self, values: Dict[str, Any]):
        """Show `values` without emitting paramChanged."""
        self.updating = True
        try:
            for name, val in values.items():
                w = self.controls.get(name)
                if w is None:
                    continue
                val = param_text(val)
                if isinstance(w, QComboBox):
                    w.setCurrentText(str(val))
                elif isinstance(w, QCheckBox):
                    w.setChecked(bool(val))
                elif isinstance(w, QLineEdit):
                    w.setText(str(val))
                else:
                    w.set_value(val)
        finally:
            self.updating = False

    def _on_change(self, *_):
        if not self.updating:
            self.paramChanged.emit()


# -----------------------------------------------------------------------------
# Main window
# -----------------------------------------------------------------------------
class DotterWindow(QMainWindow):
    frameReady = pyqtSignal(object)
    renderFailed = pyqtSignal(str)

    def __init__(self, store: Optional[JsonPaletteStore] = None):
        super().__init__()
        self.setWindowTitle("Dotter")
        self.resize(1500, 900)

        self.config = HalftoneConfig()
        self.output: Optional[Image.Image] = None
        self.store = store or JsonPaletteStore()
        self._t_edit = time.perf_counter()

        # stills: debounced on a timer thread, frames come back through frameReady
        self.static = StaticRenderer(
            self.frameReady.emit, self.config, delay=0.2,
            on_error=lambda e: self.renderFailed.emit(str(e)),
        )
        # video: ticked from the GUI thread by a QTimer
        self.video: Optional[ContinuousRenderer] = None
        self.video_timer = QTimer(self)
        self.video_timer.timeout.connect(self._video_tick)

        self.frameReady.connect(self.on_frame)
        self.renderFailed.connect(self.on_render_failed)
        self._init_ui()
        self.refresh_palettes()

    def _init_ui(self):
        toolbar = QToolBar("Main")
        toolbar.setIconSize(QSize(24, 24))
        self.addToolBar(toolbar)

        for label, slot in (("Open", self.open_file), ("Save PNG", self.save_image)):
            act = QAction(label, self)
            act.triggered.connect(slot)
            toolbar.addAction(act)
        toolbar.addSeparator()
        self.act_pause = QAction("Pause", self)
        self.act_pause.setCheckable(True)
        self.act_pause.setEnabled(False)
        self.act_pause.toggled.connect(self.set_paused)
        toolbar.addAction(self.act_pause)
        toolbar.addSeparator()
        for label, slot in (("Copy Code", self.copy_code), ("Import Code", self.import_code)):
            act = QAction(label, self)
            act.triggered.connect(slot)
            toolbar.addAction(act)

        central = QWidget()
        self.setCentralWidget(central)
        layout = QHBoxLayout(central)
        layout.setContentsMargins(10, 10, 10, 10)

        # Left: presets + saved palettes
        left = QWidget()
        left.setFixedWidth(280)
        l_layout = QVBoxLayout(left)
        l_layout.setContentsMargins(0, 0, 0, 0)

        preset_grp = QGroupBox("Presets")
        p_layout = QVBoxLayout(preset_grp)
        self.combo_presets = QComboBox()
        self.combo_presets.addItems(list_presets())
        self.combo_presets.currentTextChanged.connect(
            lambda name: self.combo_presets.setToolTip(describe_preset(name)))
        btn_preset = QPushButton("Apply Preset")
        btn_preset.clicked.connect(self.apply_preset)
        p_layout.addWidget(self.combo_presets)
        p_layout.addWidget(btn_preset)
        l_layout.addWidget(preset_grp)

        pal_grp = QGroupBox("Saved Palettes")
        s_layout = QVBoxLayout(pal_grp)
        self.list_palettes = QListWidget()
        self.list_palettes.itemDoubleClicked.connect(lambda _: self.apply_saved_palette())
        s_layout.addWidget(self.list_palettes)
        row = QHBoxLayout()
        for label, slot in (("Save", self.save_palette), ("Apply", self.apply_saved_palette),
                            ("Delete", self.delete_palette)):
            btn = QPushButton(label)
            btn.clicked.connect(slot)
            row.addWidget(btn)
        s_layout.addLayout(row)
        l_layout.addWidget(pal_grp, 1)
        layout.addWidget(left)

        # Center: result
        center_grp = QGroupBox("Result")
        c_layout = QVBoxLayout(center_grp)
        c_layout.setContentsMargins(0, 10, 0, 0)
        self.viewer = ImageViewer()
        c_layout.addWidget(self.viewer)
        layout.addWidget(center_grp, 1)

        # Right: parameters
        right_grp = QGroupBox("Parameters")
        right_grp.setFixedWidth(350)
        r_layout = QVBoxLayout(right_grp)
        scroll = QScrollArea()
        scroll.setWidgetResizable(True)
        scroll.setHorizontalScrollBarPolicy(Qt.ScrollBarAlwaysOff)
        scroll.setFrameShape(QFrame.NoFrame)
        self.settings = SettingsPanel()
        self.settings.paramChanged.connect(self.on_param_changed)
        scroll.setWidget(self.settings)
        r_layout.addWidget(scroll)
        layout.addWidget(right_grp)

        self.status = QLabel("Ready")
        self.statusBar().addWidget(self.status)

    # ---- sources ----
    def open_file(self):
        path, _ = QFileDialog.getOpenFileName(
            self, "Open Image or Video", "",
            "Media (*.png *.jpg *.jpeg *.webp *.bmp *.gif *.mp4 *.mov *.mkv *.avi *.webm *.m4v);;All (*.*)")
        if not path:
            return
        try:
            if is_video_path_or_url(path):
                self.open_video(path)
            else:
                self.open_image(path)
        except Exception as e:
            log.exception("Open failed: %s", e)
            QMessageBox.critical(self, "Error", f"Failed to open: {e}")

    def open_image(self, path: str):
        self.stop_video()
        img = ImageLoader().load(Path(path).read_bytes(), max_size=PREVIEW_MAX_SIZE)
        self.viewer.set_image(img)
        self._t_edit = time.perf_counter()
        self.static.update(self.config, source=img)
        self.status.setText(f"Loaded {Path(path).name} ({img.width}x{img.height})")

    def open_video(self, path: str):
        self.stop_video()
        self.static.cancel()
        source = VideoSource(path, max_size=PREVIEW_MAX_SIZE).open()
        self.video = ContinuousRenderer(self.on_frame, self.config, source=source, fps=source.fps)
        self.video.begin()
        self.video_timer.start(max(1, int(1000 / (source.fps or 30.0))))
        self.act_pause.setEnabled(True)
        self.act_pause.setChecked(False)
        self.status.setText(f"Playing {Path(path).name} ({source.size[0]}x{source.size[1]} @ {source.fps:.2f} fps)")

    def _video_tick(self):
        loop = self.video
        if loop is None:
            return
        try:
            loop.tick()
        except Exception as e:
            log.exception("Video frame failed: %s", e)
            self.stop_video()
            self.on_render_failed(str(e))
            return
        if loop.source is None or loop.source.ended:
            self.status.setText(f"Video ended ({loop.frames} frames)")
            self.stop_video()

    def set_paused(self, paused: bool):
        if self.video is not None and self.video.source is not None:
            self.video.source.paused = paused
            self.act_pause.setText("Resume" if paused else "Pause")

    def stop_video(self):
        self.video_timer.stop()
        if self.video is not None:
            self.video.stop()
            self.video = None
        self.act_pause.setEnabled(False)

    # ---- config ----
    def apply_config(self, config: HalftoneConfig):
        self.config = config
        self.settings.set_values(config.to_dict())
        self._push_config()

    def _push_config(self):
        self._t_edit = time.perf_counter()
        if self.video is not None:
            self.video.set_config(self.config)
        else:
            self.static.update(self.config)

    def on_param_changed(self):
        self.config = self.config.merged(self.settings.get_values())
        self._push_config()

    def apply_preset(self):
        name = self.combo_presets.currentText()
        self.apply_config(preset_config(name))
        self.status.setText(f"Preset: {name}")

    def copy_code(self):
        QApplication.clipboard().setText(export_token(self.config))
        self.status.setText("Configuration code copied to clipboard")

    def import_code(self):
        text, ok = QInputDialog.getText(self, "Import Code", "Paste a configuration code:")
        if not ok or not text.strip():
            return
        try:
            config = import_token(self.config, text)
        except ConfigTokenError as e:
            log.warning("%s", e)
            QMessageBox.information(self, "Import Code", "Invalid configuration code. Settings were not changed.")
            return
        self.apply_config(config)
        self.status.setText("Configuration imported")

    # ---- saved palettes ----
    def refresh_palettes(self):
        self.list_palettes.clear()
        for item in self.store.list():
            row = QListWidgetItem(f"{item.name}  [{item.mode}]")
            row.setData(Qt.UserRole, item)
            self.list_palettes.addItem(row)

    def _selected_palette(self) -> Optional[SavedPalette]:
        row = self.list_palettes.currentItem()
        return row.data(Qt.UserRole) if row is not None else None

    def save_palette(self):
        name, ok = QInputDialog.getText(self, "Save Palette", "Name:")
        if not ok or not name.strip():
            return
        try:
            self.store.save(name.strip(), self.config.palette)
        except OSError as e:
            QMessageBox.warning(self, "Save Palette", f"Could not save palette: {e}")
            return
        self.refresh_palettes()

    def apply_saved_palette(self):
        item = self._selected_palette()
        if item is not None:
            self.apply_config(self.config.with_palette(item.palette))
            self.status.setText(f"Palette: {item.name}")

    def delete_palette(self):
        item = self._selected_palette()
        if item is None:
            return
        try:
            self.store.delete(item.id)
        except OSError as e:
            QMessageBox.warning(self, "Delete Palette", f"Could not delete palette: {e}")
            return
        self.refresh_palettes()

    # ---- output ----
    def on_frame(self, img: Image.Image):
        self.output = img
        self.viewer.set_image(img, refit=False)
        if self.video is None:
            self.status.setText(f"Rendered in {(time.perf_counter() - self._t_edit) * 1000:.0f} ms (incl. debounce)")

    def on_render_failed(self, msg: str):
        self.status.setText("Error")
        QMessageBox.warning(self, "Render Error", msg)

    def save_image(self):
        if self.output is None:
            return
        path, _ = QFileDialog.getSaveFileName(self, "Save Image", "halftone.png", "PNG (*.png)")
        if path:
            save_image(self.output, Path(path))
            self.status.setText(f"Saved to {Path(path).name}")

    def closeEvent(self, event):
        self.static.cancel()
        self.stop_video()
        super().closeEvent(event)


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)-8s | %(message)s", datefmt="%H:%M:%S")
    app = QApplication(sys.argv)
    set_dark_theme(app)
    win = DotterWindow()
    win.show()
    sys.exit(app.exec_())


if __name__ == "__main__":
    main()
