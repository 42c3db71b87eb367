"""
Progression engine: XP ledger, achievements and peer validation.
"""

__version__ = "0.1.0"
