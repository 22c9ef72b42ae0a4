"""
Host resource management for matpipe.
"""

from .resource_manager import ResourceManager

__all__ = ["ResourceManager"]
