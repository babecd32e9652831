import os

# Tests never need a real display; the offscreen platform also gives a clipboard.
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
