"""
Web dashboard for recording labeled IMU motions.
"""

from .app import CollectorApp, create_app

__all__ = ["CollectorApp", "create_app"]
