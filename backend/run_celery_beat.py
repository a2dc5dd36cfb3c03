#!/usr/bin/env python3
# backend/run_celery_beat.py
"""
Development Celery beat runner: schedules the hold reaper and entitlement expiry.
"""
import os
from pathlib import Path
import subprocess
import sys

backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

os.environ.setdefault("ENVIRONMENT", "development")

if __name__ == "__main__":
    print("🚀 Starting Celery beat (ENVIRONMENT=" + os.environ["ENVIRONMENT"] + ")…")
    print("⏰ Beat will schedule expire-stale-holds and expire-lapsed-entitlements")
    print("")

    cmd = [
        sys.executable,
        "-m",
        "celery",
        "-A",
        "mentorbook.tasks.celery_app",
        "beat",
        "--loglevel=info",
    ]

    subprocess.run(cmd)
