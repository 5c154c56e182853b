"""
releasebox - pinned build environments and reproducible cargo releases
"""

__version__ = "0.1.0"

from .core import ReleaseDriver
from .errors import ReleaseboxError

__all__ = ["ReleaseDriver", "ReleaseboxError"]
