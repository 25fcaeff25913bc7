"""
asmail - an asyncio IMAP client engine.
"""

__version__ = "0.3.0"
