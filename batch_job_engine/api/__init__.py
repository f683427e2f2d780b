"""
HTTP trigger for the batch jobs.
"""

from .app import create_app

__all__ = ["create_app"]
