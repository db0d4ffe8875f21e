"""
Commit Tracer Service.

This service is responsible for:
- Tracing commits to the merge requests that introduced them
- Resolving the issues those merge requests close
- Resolving the epics that own those issues
- Caching GitLab responses between traces
"""

__version__ = "1.0.0"
__author__ = "Commit Tracer Team"
__description__ = "GitLab commit relationship tracing service"
