#!/usr/bin/env python3
""" Create the safety tables (user_safety, safety_events) in DATABASE_URL. """
import sys
from pathlib import Path

# Add the repository root to the Python path
sys.path.append(str(Path(__file__).resolve().parents[2]))

from backend.app.db.base import DATABASE_URL, init_db  # noqa: E402

if __name__ == "__main__":
    print(f"Initializing safety tables in {DATABASE_URL}...")
    init_db()
    print("Database initialization complete!")
