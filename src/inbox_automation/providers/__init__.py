from .base import EmailProvider
from .factory import create_provider

__all__ = ["EmailProvider", "create_provider"]
