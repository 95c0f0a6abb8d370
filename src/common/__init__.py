"""
Common utilities for wa-pairing-bot.

Modules:
- config: environment / SSM configuration and ConfigurationError
- log: process logging setup
- telegram: Telegram Bot API client (sendMessage, sendPhoto, getUpdates)
- gemini: Gemini generateContent client
- qr: QR code PNG rendering
"""

__all__ = [
    "config",
    "log",
    "telegram",
    "gemini",
    "qr",
]
