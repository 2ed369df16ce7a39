from __future__ import annotations
import os

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ["REDIS_URL"]
REPORT_CHANNEL = os.environ.get("REPORT_CHANNEL", "batchci:reports")
RECENT_RUNS_KEY = os.environ.get("RECENT_RUNS_KEY", "batchci:recent_runs")
RECENT_RUNS_KEEP = int(os.environ.get("RECENT_RUNS_KEEP", "100"))
