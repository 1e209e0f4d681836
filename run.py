#!/usr/bin/env python3
"""Convenience runner for the ride stop tracker.

Usage:
    python run.py replay ride.csv
    python run.py clusters --problem
"""
import sys

from ride_stops.main import main

if __name__ == "__main__":
    sys.exit(main())
