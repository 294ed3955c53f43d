"""
gq-migrate: versioned schema migrations for the game-lobby database.
"""

__version__ = "0.1.0"
