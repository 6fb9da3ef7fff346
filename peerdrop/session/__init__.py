"""
Session Module - Pairing Codes

Maps short human-readable codes to two-party sessions.
"""

from .directory import Session, SessionDirectory, generate_code, CODE_LENGTH

__all__ = [
    'Session',
    'SessionDirectory',
    'generate_code',
    'CODE_LENGTH',
]
