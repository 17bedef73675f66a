"""
minicord - message-stream synchronization for a small chat client
"""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("minicord")
except PackageNotFoundError:
    __version__ = "0.1.0"

__logo__ = "💬"
