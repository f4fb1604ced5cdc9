import sys
from pathlib import Path

# Add src/ to the path so tests can import modules as top-level packages like `detector`.
ROOT = Path(__file__).resolve().parents[1]
SRC = str(ROOT / "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

# Note: tests expect real boto3 and httpx installed in the test environment;
# install the project with its test extra rather than stubbing them here.
