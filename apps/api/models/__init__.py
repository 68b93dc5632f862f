"""Models package."""

from .user import User
