"""
Code Expander Version Information
Single source of truth for the package version and the User-Agent sent to the terminology server
"""

__version__ = "1.0.0"

APP_NAME = "EMIS Code Expander"
APP_DESCRIPTION = "Resolves EMIS value sets into verified SNOMED CT concept sets"

VERSION_MAJOR = 1
VERSION_MINOR = 0
VERSION_PATCH = 0

USER_AGENT = f"EMIS-Code-Expander/{__version__}"
