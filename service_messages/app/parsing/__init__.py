"""
Message body parsing.

Converts XML request bodies into the nested documents the rules engine
evaluates.
"""

from .xml_document import xml_to_document

__all__ = ["xml_to_document"]
