"""
CLI package for the batch job engine

Provides the command-line interface for running, inspecting and
controlling job executions.
"""

from .main import main, cli, parse_job_parameter

__all__ = ["main", "cli", "parse_job_parameter"]
