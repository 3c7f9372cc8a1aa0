"""
Management API client and the inbound HTTP API.
"""

from .client import ManagementClient, TeamStackPermission, ScheduleKind

__all__ = [
    "ManagementClient",
    "TeamStackPermission",
    "ScheduleKind",
]
