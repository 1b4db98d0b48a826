"""
servicebed - Ephemeral service harness for container-backed integration tests.

Subpackages:
- servicebed.core: Error taxonomy
- servicebed.framework: Structured logging
- servicebed.harness: Container engine, readiness conditions, scoped services
- servicebed.cli: ``servicebed`` command-line interface
"""

__version__ = "0.1.0"
