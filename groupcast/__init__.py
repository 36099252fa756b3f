"""
groupcast - multi-tenant group broadcaster
"""

__version__ = "0.1.0"
__logo__ = "📣"
