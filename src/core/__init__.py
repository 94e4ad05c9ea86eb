"""Core domain package for teleecho.

Core contains the pairing handshake and the relay engine without any Telegram
or storage-specific code, keeping the delivery logic portable.
"""
