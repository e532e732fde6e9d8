"""
Root pytest configuration.
Switches settings to testing mode before any application module is imported,
so the app engine is an in-memory SQLite database.
"""
import os

os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("WEBHOOK_PROCESS_ASYNC", "False")
