from .responder import reply_for

__all__ = ["reply_for"]
