"""
stackkeeper - lifecycle policy engine for managed stacks.

Keeps TTL schedules, drift schedules, team permissions, purge tags and
deployment settings of Pulumi Cloud stacks in line with desired policy.
"""

__version__ = "0.1.0"
