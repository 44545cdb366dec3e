"""
EMIS value set expansion against a FHIR terminology server and local RF2 snapshots
"""

from .system.version import __version__

__all__ = ['__version__']
