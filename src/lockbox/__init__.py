"""
lockbox - Encrypted volume lifecycle manager.

Creates, mounts and unmounts a LUKS container, supervises the applications
living inside it, and dismounts it automatically after a period of inactivity.
"""

from .config import Config
from .core import Lockbox
from .errors import LockboxError
from .system import check_dependencies

__all__ = ["Config", "Lockbox", "LockboxError", "check_dependencies"]
