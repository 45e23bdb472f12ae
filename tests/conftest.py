import os
import sys

# Ensure project root is on sys.path so tests can import daily_kline_loader.py and api.py as modules
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)
