"""
Update cycle orchestrator.

This package drives a sample application through a complete update cycle:
two release bundles are built and published, version 1.0 is installed,
a transient file server hosts the repository and the installed client is
run until it reports version 2.0.
"""

__version__ = "0.1.0"
