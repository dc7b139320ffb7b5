import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent

# src layout: make the package importable without an install, and expose the
# shared fakes in this directory.
sys.path.insert(0, str(ROOT / "src"))
sys.path.insert(0, str(Path(__file__).resolve().parent))
