"""
Exceptions raised by Sous Chef's external collaborators
"""


class SousChefError(Exception):
    """Base exception for all Sous Chef failures"""
    pass


class GatewayError(SousChefError):
    """Raised when the NLU gateway (Watson Assistant) call fails"""
    pass


class RecipeSourceError(SousChefError):
    """Raised when the recipe API cannot answer a request"""
    pass


class StoreError(SousChefError):
    """Raised when the recipe store is unavailable or holds a corrupt record"""
    pass


class TransportError(SousChefError):
    """Raised when a chat transport cannot deliver a message"""
    pass
