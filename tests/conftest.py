import os
import sys
import tempfile
from pathlib import Path

_DB_PATH = os.path.join(tempfile.gettempdir(), "playlist_app_tests.sqlite")
if os.path.exists(_DB_PATH):
    os.remove(_DB_PATH)
os.environ.setdefault("DB_URL", f"sqlite:///{_DB_PATH}")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
