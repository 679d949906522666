"""Hyrox Sync - keeps workout data consistent across watch, phone and cloud."""

__version__ = "0.4.0"
