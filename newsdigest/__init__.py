"""
News digest job scheduler.

Background job scheduling and execution engine for the news aggregation,
AI analysis and email digest pipeline.
"""

__version__ = "1.0.0"
