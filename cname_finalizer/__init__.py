"""
CNAME Finalizer
A DNS response post-processor that follows dangling CNAME chains upstream
so clients receive a fully resolved answer
"""

from .version import __author__, __version__

__all__ = ["__author__", "__version__"]
