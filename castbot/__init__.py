"""
Telegram bridge for reading and acting on Farcaster through a delegated signer.
"""
__version__ = "1.0.0"
