"""Version information for chatengine.

Single source of truth for version number.
Follows PEP 440 and semantic versioning principles.
"""

__version__ = "0.3.0"
__version_info__ = tuple(int(part) for part in __version__.split("."))

# Version history:
# 0.3.0 - Web conversation backend, model availability cache
# 0.2.0 - Prompt-completion backend, tenacity-based retry policy
# 0.1.0 - Chat-completion streaming client
