"""Stagecast signaling service application.

The ASGI app lives in :mod:`app.main`; this package only makes ``src/``
importable when running from a checkout.
"""

from pathlib import Path
import sys

SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if SRC_PATH.exists() and str(SRC_PATH) not in sys.path:
    sys.path.append(str(SRC_PATH))
