"""
Feed Monitor Service.

This service is responsible for:
- Polling monitored GitLab branches for new commits
- Queueing detected commits for tracing with bounded concurrency
- Retrying failed traces and publishing processing outcomes
"""

__version__ = "1.0.0"
__author__ = "Commit Tracer Team"
__description__ = "GitLab feed monitoring and commit processing service"
