"""Multi-source parts search for heavy-equipment maintenance."""

__version__ = "0.1.0"
