"""
FlowForge - workflow automation core.

Cron scheduling, queue-backed execution and DAG workflow execution.
"""

__version__ = "0.1.0"
