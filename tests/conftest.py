import sys
from pathlib import Path

# Ensure src/ and the test helpers are importable
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
TESTS = ROOT / "tests"
for p in (ROOT, SRC, TESTS):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))
