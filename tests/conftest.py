import os
import sys

# Keep test runs quiet and offline
os.environ.setdefault("DISABLE_TELEMETRY", "true")
sys.path.insert(0, os.path.dirname(__file__))
