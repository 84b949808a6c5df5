"""Agent Governor - governance pipeline for self-modifying agent configuration.

Signals are buffered into proposals, ratified by a council, applied to the
project transactionally, and rolled back automatically when performance
degrades.
"""

__version__ = "0.1.0"
