#!/usr/bin/env python3
"""
Celery worker script for the settlement engine.
Run this script to start the Celery worker for deferred webhook processing.
"""

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

if __name__ == "__main__":
    from core.logging_config import configure_logging
    from core.celery import celery_app

    configure_logging()

    # Start Celery worker
    celery_app.start([
        "worker",
        "--loglevel=info",
        "--concurrency=4",
        "--without-gossip",
        "--without-mingle",
        "--without-heartbeat",
    ])
