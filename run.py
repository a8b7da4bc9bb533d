#!/usr/bin/env python3
"""Convenience runner for the stage challenge batch job.

Usage:
    python run.py process
"""
import logging
from stage_challenge.main import main

if __name__ == "__main__":
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s %(name)s: %(message)s")
    raise SystemExit(main())
